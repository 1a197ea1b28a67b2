"""PageSense: a stable, compact view of live web pages for automation agents."""

from pagesense.perception import PagePerception

__version__ = "0.1.0"

__all__ = ["PagePerception", "__version__"]
