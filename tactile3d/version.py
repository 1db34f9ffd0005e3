__version__ = "1.0.0"


def version() -> str:
    """Version tag recorded in every model and integrator."""
    return __version__
