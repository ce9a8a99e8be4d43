"""featurepkg - install/remove engine for optional feature packages."""

__version__ = "0.1.0"
