"""
Review package - the top-level review session and what runs around it.

- prompts: review, retry, recovery and bug-pass prompt builders
- classifiers: meta-summary detection and bug-candidate extraction
- bug_pass: per-candidate verification sessions producing bug cards
- orchestrator: ReviewOrchestrator, attempts, loop recovery and delivery
"""
