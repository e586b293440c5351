"""
Cache Services Module

Application services for the multi-level cache: operations, statistics,
invalidation, warming, validation, maintenance and the manager facade.
"""
