"""
Squashie Conflict Service
=========================

Backend for the Squashie conflict-mediation app:
1. Conflict lifecycle engine (respond, vote, core issues, final ruling)
2. AI mediation with deterministic offline fallbacks
3. SquashCred rewards, achievements and the public AI-ruling feed

Runs without an LLM key; mediation falls back to local text transforms.
"""

__version__ = "1.0.0"
