# ABOUTME: Utilities package initialization for the GitOps reconciler
# ABOUTME: Contains shared utilities for the cluster client, rate limiting and logging

"""
GitOps Reconciler Utilities Package

Shared utilities:
    - cluster.py: Cluster REST API client with retry logic
    - ratelimit.py: Sliding-window limiter for cluster API calls
    - logging.py: Structured logging with correlation IDs and events
"""
