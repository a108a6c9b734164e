"""Audio capture pipeline -- per-bot buffering, WAV framing, and transcription.

Provides AudioPipeline (buffer + periodic flush), WAV framing/parsing
helpers, and WhisperClient for the speech-to-text backend.
"""
