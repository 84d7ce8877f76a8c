"""Signaling link between two peers that only know each other's address.

A connection is opened outbound when the peer is already listening, otherwise
this side listens on the same port and waits for the peer to dial in. Frames are
newline-delimited JSON commands (offer, answer, candidate).
"""
