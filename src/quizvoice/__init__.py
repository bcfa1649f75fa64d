"""QuizVoice: voice capture for the quiz client."""

__version__ = "0.1.0"
