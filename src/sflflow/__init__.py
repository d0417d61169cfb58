"""sflflow: validation and asynchronous execution of SFL prompt workflows."""

__version__ = "1.0.0"
