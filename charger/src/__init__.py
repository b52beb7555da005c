"""
PV surplus charger package.

Reads cumulative grid import/export energy from an Enphase Envoy, derives the
average surplus over each poll interval, and steers an OpenEVSE charge-current
setpoint so the vehicle charges from PV surplus only.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""
