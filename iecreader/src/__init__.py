"""
Edge reader package for IEC 62056-21 Mode C electricity meters.

Reads cumulative energy registers from the meter's optical port, estimates
the current power from the counter stream, and publishes snapshots over
HTTPS or MQTT.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""
