"""
Core modules for Feed Quota Guard.

This package contains the quota ledger, content cache, fetch executor,
effectiveness learner, scheduler, prefetch predictor and orchestrator.
"""
