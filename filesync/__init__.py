"""
filesync - a multi-client file synchronization server
Serves a flat directory over newline-delimited JSON packets
"""

__version__ = "1.0.0"
