__version__ = "0.3.0"

from .tracing import configure_tracing

configure_tracing()

__all__ = ["__version__"]
