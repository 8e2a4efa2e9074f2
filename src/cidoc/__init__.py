"""ci-doctor: diagnose failing GitHub Actions runs and push verified fixes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
