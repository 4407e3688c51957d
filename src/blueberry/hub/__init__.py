"""Client side of the Home Assistant WebSocket/REST protocol."""
