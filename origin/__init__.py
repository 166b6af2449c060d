"""Server framework pieces: logging, profiling, command line, events, cluster configuration, networking and RPC."""

__version__ = "0.1.0"