"""
Service layer for speechflow.

    - speech_service.py: SpeechService pipeline (validate, admit, cache,
      network, track)
"""
from speechflow.services.speech_service import SpeechService

__all__ = ["SpeechService"]
