# ABOUTME: GitOps reconciler package initialization
# ABOUTME: Exposes version information

"""
GitOps reconciler - hierarchical declarative reconciliation for Kubernetes.

=============================================================================
WHAT DOES IT DO?
=============================================================================

A controller that keeps clusters converged to state declared in Git:

1. RESOLVES a root Application into the App-of-Apps hierarchy it declares
2. COMPOSES each Application's manifests from a base plus ordered overlays
3. COMPARES the composed set with what is live in the target cluster
4. SYNCS the difference when the Application's policy allows it

and repeats forever, with bounded retries, self-heal on drift and a status
surface served over MCP.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_reconciler/
├── __init__.py          <- YOU ARE HERE
├── config.py            <- Settings (env vars, clusters, loop tuning)
├── errors.py            <- Error taxonomy
├── models.py            <- Applications, overlays, resource identity, SyncState
├── overlay.py           <- Overlay composer
├── builder.py           <- Desired-state builder
├── graph.py             <- Application graph resolver
├── observer.py          <- Live-state observer
├── diff.py              <- Drift detector
├── sync.py              <- Sync executor
├── state.py             <- Copy-on-write state store
├── loop.py              <- Reconciliation loop
├── server.py            <- MCP server and entry point
└── utils/
    ├── source.py        <- Manifest sources (memory, file://, HTTP archive)
    ├── cluster.py       <- Cluster protocol and in-memory cluster
    ├── client.py        <- Kubernetes REST client
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Guards on manual triggers
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
