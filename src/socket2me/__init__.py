"""Socket2Me - forward public HTTP requests to a local server through a relay tunnel."""

__version__ = "0.3.0"
