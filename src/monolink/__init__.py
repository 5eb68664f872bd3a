"""monolink - dependency installation and linking engine for JavaScript monorepos."""

__version__ = "0.4.0"
