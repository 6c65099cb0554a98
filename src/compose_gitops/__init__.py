# ABOUTME: compose-gitops package initialization
# ABOUTME: Exposes version information

"""
compose-gitops - single-host GitOps reconciler for Docker Compose.

=============================================================================
WHAT DOES IT DO?
=============================================================================

Each registered project is a Git repository holding compose files. The
reconciler:

1. CLONES the repository into its own working directory
2. WATCHES the tracked branch and notices when the remote tip moves
3. DEPLOYS by hard-resetting the checkout and re-running ``docker compose up``
4. RECORDS every attempt as a Deployment with its output

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

compose_gitops/
├── __init__.py          <- Package entry point
├── app.py               <- Wiring (AppContext) and the main() entry point
├── config.py            <- Configuration management (GITOPS_* env vars)
├── domain.py            <- Project, Deployment, Git auth, status enums
├── errors.py            <- Exception taxonomy
├── repositories.py      <- Persistence protocols and in-memory stores
├── services/
│   ├── git_sync.py      <- Git clone / fetch / pull via GitPython
│   ├── compose.py       <- Compose subprocess execution and parsing
│   ├── streaming.py     <- Bounded output stream
│   ├── vault.py         <- Credential encryption
│   ├── orchestrator.py  <- Deploy / stop / remove lifecycle
│   └── watcher.py       <- Drift-detection loop
└── utils/
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Per-project locks and secret masking
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
