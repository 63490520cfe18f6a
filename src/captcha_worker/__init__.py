"""Worker client that presents solver challenges to a human and submits the tokens."""

__version__ = "0.1.0"
