# ABOUTME: GitOps Reconciler package initialization
# ABOUTME: Exposes version information

"""
GitOps Reconciler - keeps a cluster continuously converged to manifests in Git.

=============================================================================
WHAT DOES IT DO?
=============================================================================

For every configured Application the reconciler runs a loop:

1. POLL Git for the target revision and read the files under the path
2. RENDER the templated manifests with the Application's values overlay
3. DIFF the rendered desired state against the live cluster state
4. SYNC the difference: creates, updates and (with prune) deletes,
   applied phase by phase so Namespaces and CRDs exist before the
   objects that need them

A pass ends in a Sync Result (Synced, OutOfSync, Degraded or Error) that
can be queried by Application name. Between polls the live state is
checked for drift; with self-heal on, drift is reverted at once.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_reconciler/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Settings (env vars) and Application loading
├── models.py            <- Applications, resources, operations, results
├── errors.py            <- Error taxonomy (retryable vs terminal)
├── poller.py            <- Git Poller
├── renderer.py          <- Manifest Renderer (Jinja2 + YAML)
├── differ.py            <- Desired-State Differ and phase ordering
├── executor.py          <- Sync Executor
├── reconciler.py        <- Reconciliation Loop (per-Application controllers)
├── history.py           <- Sync Result history
├── server.py            <- MCP server with status tools and triggers
└── utils/
    ├── __init__.py      <- Utils subpackage marker
    ├── cluster.py       <- HTTP client for the cluster REST API
    ├── logging.py       <- Structured logging and reconciliation events
    └── ratelimit.py     <- Sliding-window rate limiter for cluster calls
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
