# ABOUTME: Utilities package initialization for the compose-gitops reconciler
# ABOUTME: Contains shared utilities for logging, locking and secret masking

"""
Shared utilities:
    - logging.py: Structured logging with correlation IDs and the audit trail
    - safety.py: Per-project locks and credential masking
"""
