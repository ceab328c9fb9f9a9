# ABOUTME: Utilities package initialization for the GitOps reconciler
# ABOUTME: Contains the external boundaries plus logging and safety helpers

"""
GitOps Reconciler Utilities Package

Shared utilities:
    - source.py: Manifest sources (in-memory, file://, HTTP archives)
    - cluster.py: Cluster boundary protocol and in-memory cluster
    - client.py: Kubernetes REST client with retry logic
    - safety.py: Guards on manual sync and refresh requests
    - logging.py: Structured logging with correlation IDs
"""
