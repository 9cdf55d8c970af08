"""Call Transcription Service - speech-to-text job orchestration.

This service runs long-running transcription jobs against external providers:
- Provider adapters (Azure batch, OpenAI Whisper, Azure OpenAI Whisper)
- Progress tracking with push subscriptions and restart recovery
- Cooperative cancellation and bounded retry
"""

__version__ = "0.1.0"
