"""batchprompt - fan one prompt out to many local projects.

Sends a single prompt to a set of project directories and tracks each
project's progress from one multiplexed event stream.
"""

__version__ = "0.1.0"
