"""Speech provider adapters.

Architecture:
- base: ProviderAdapter protocol, AdapterResult, AdapterSession, HTTP helpers
- azure_batch: Blob upload, batch job create, poll, transcript fetch (SharedKey signing)
- whisper: single multipart call to OpenAI Whisper or an Azure OpenAI deployment
- factory: closed provider tag -> adapter registry
"""
