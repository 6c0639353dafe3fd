"""
HTTP client and command-line interface for the workload server.
"""
