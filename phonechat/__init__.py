"""Real-time chat and phone-number sign-in over Firebase, with a token verification backend."""

__version__ = "1.0.0"
