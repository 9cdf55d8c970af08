"""Transcription job orchestration.

Architecture (bottom-up):
- schemas: operation lifecycle, provider config, result models
- errors: typed failure taxonomy
- db: snapshot persistence (SQLite or Postgres)
- progress_tracker: live operation registry, progress fanout, restart recovery
- retry: retry policy and per-job counters
- polling: bounded poll loop for remote batch jobs
- settings: YAML provider profiles
- orchestrator: submit, cancel, retry and query jobs
"""
