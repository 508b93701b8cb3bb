"""Signaling relay: room membership and handshake message routing."""
