"""
BluOS adapter, bridging a home-automation state tree and BluOS players.

Modules:
  config:       JSON config loader (cfg)
  state_store:  host state tree seam (memory binding)
  mqtt_store:   MQTT-mirrored binding
  registry:     configured devices/groups snapshot
  client:       BluOS HTTP control client
  poller:       per-device polling + command dispatch
  service:      adapter lifecycle and entry point
"""

__version__ = "0.1.0"
