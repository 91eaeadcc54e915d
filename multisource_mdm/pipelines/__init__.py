"""
Data processing pipelines.
"""
