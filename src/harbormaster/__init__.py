"""Harbormaster - Deployment orchestration and rollback for containerized services.

This package promotes a new container image into a running environment,
gates it on HTTP health checks and an extended monitoring window, and
automatically restores the previous instance and its data on failure.
"""

__version__ = "0.1.0"
