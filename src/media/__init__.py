"""Media engine adapters.

Requires the optional ``media`` extra (aiortc).
"""
