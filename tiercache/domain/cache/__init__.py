"""
Cache Domain Module

Value objects, entities, repository interfaces and domain services for
multi-tier cache orchestration.
"""
