"""
entity_sync -- Entity extraction, normalization, merge and sync engine.

Turns loosely-structured AI-generated panel data into stable NPC and
Organization records kept per conversation, and mirrors them into an
external world book.
"""

__version__ = "0.1.0"
