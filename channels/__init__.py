"""Voice platform channels. Vapi is the only supported platform."""
