"""
HTTP API for workload operations, pipeline runs and live updates.
"""
