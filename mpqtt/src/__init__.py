"""
mpqtt: MasterPower/Voltronic inverter to MQTT telemetry agent.

Polls a PI30-protocol solar inverter over a hidraw or serial transport on a
two-tier schedule and republishes the decoded readings, heartbeat stats and
error state to an MQTT broker.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""
