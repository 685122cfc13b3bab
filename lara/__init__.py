"""
Lara - Voice command package

Root package for the Lara voice assistant: a wake-word driven pipeline that
turns spoken commands into classified actions and speaks the outcome back.

Core modules:
- utils: Environment parsing helpers and async/byte utilities
- assistant: Wake word listening, capture, transcription, intent classification,
  action dispatch, speech synthesis, and the session state machine
"""

__version__ = "0.4.2"
