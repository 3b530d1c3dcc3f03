"""JobTrackr background core: analysis queue, workers and reminder sweep."""

__version__ = "0.4.0"
