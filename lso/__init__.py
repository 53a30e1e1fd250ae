"""Local Stack Orchestrator (LSO).

Single-operator tool that brings up a multi-service development stack on one
machine:
 - secret bundles fetched from a remote cluster and written to local config files
 - containers and local processes started in dependency order, gated on readiness
 - a mock/proxy gateway answering outbound API calls from rules or real upstreams
 - a read-only console with unit state, log tails and the gateway journal
"""
