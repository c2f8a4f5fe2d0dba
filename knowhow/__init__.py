"""
Knowhow - field knowledge assistant package

This is the root package for the Knowhow voice client, containing the
hands-free conversation engine used by field workers to talk to the knowledge
assistant.

Core modules:
- voice: Hands-free voice dialogue engine (turn-taking, barge-in, registration)
"""

__version__ = "0.4.2"
