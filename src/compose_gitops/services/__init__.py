# ABOUTME: Services package for the compose-gitops reconciler
# ABOUTME: Git sync, compose execution, credential vault, orchestration and the watcher

"""
Reconciler services, in dependency order:

    - git_sync.py: clone / fetch / pull / ls-remote via GitPython
    - compose.py: compose subprocess execution and status parsing
    - streaming.py: bounded output stream for long-running commands
    - vault.py: Fernet encryption of stored Git credentials
    - orchestrator.py: deploy / stop / remove lifecycle
    - watcher.py: periodic drift detection
"""
