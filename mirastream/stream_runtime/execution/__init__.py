"""Response pipeline for the stream runtime.

- **source**: Text-generation adapters (pydantic-ai model, static fragments)
- **analysis**: JSON extraction, clamping and state transitions
- **pipeline**: Request -> ordered envelopes, including the in-band error taxonomy
"""
