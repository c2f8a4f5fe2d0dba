"""
Hands-free voice conversation engine for Knowhow field workers

This package keeps a microphone open during a spoken dialogue with the Knowhow
assistant and turns that dialogue into shareable knowledge:

- Turn-taking: silence-debounced commits of streamed recognition results
- Echo rejection: drops recognitions of the assistant's own synthesized voice
- Barge-in: energy-based voice activity detection calibrated per reply
- Commands: closing phrases, "record this" triggers, confirm/draft/cancel replies
- Registration: analysis-driven knowledge proposals saved through the Knowhow API
- Speech I/O: Wyoming STT/TTS, service-side synthesis, local playback

Key modules:
- config: Configuration management from environment variables
- orchestrator: The dialogue state machine
- assembler / echo / vad / intents: Per-turn signal and text processing
- services: Collaborator contracts and the Knowhow REST client
- wyoming / audio / synthesis: Speech capture and playback adapters
- mqtt: State and metrics telemetry
"""

from __future__ import annotations

__all__ = [
    "config",
    "orchestrator",
    "assembler",
    "echo",
    "vad",
    "intents",
    "services",
    "wyoming",
    "mqtt",
]
