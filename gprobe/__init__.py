"""gprobe: command-line client for the gRPC health-checking protocol."""

__version__ = "0.1.0"
