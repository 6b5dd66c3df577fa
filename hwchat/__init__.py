"""
hwchat - a small TCP chat service keyed by hardware id.

Layers (leaves first):
- framing:   binary frame codec (tag, timestamp, CRC-32, length-prefixed UTF-8 fields)
- messages:  client->server and server->client catalogs built on the codec
- reader:    byte-stream accumulator that yields complete frames
- registry:  hwid -> (writer, client) map with best-effort broadcast
- node:      per-connection session/auth state machine, server and client
- crypto:    HWID derivation and session tokens
- config:    TOML settings with defaults
- run_node:  command line entry point

Run `hwchat --mode server` on one machine and `hwchat --mode client` on others.
"""
__all__ = ["config", "crypto", "framing", "messages", "node", "reader", "registry", "run_node"]
