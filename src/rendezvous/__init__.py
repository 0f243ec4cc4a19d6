"""Rendezvous matchmaking broker.

Pairs two waiting clients through a single waiting slot, assigns them
initiator and receiver roles, and tracks each pairing until one side
ends it or disconnects.
"""

__version__ = "0.1.0"
