"""Huddle client: relay signaling, peer mesh and voice activity detection."""
