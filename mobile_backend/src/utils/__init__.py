"""
Utility modules for the mobile backend.

This package contains shared utilities used across the application:
- cache: In-process TTL cache for device subscriptions and task markers
- query_language: Continuous-query grammar, parser and evaluator
- filter_expression: Client filter trees compiled to SQL and to queries
- logging_config: Logger setup shared by the API and the workers
"""
