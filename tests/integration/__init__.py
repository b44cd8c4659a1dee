"""
Integration Tests Package

Whole-server scenarios: real watcher, real HTTP server, streaming client.
"""
