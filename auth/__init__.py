"""auth/ -- Identity and access core: sessions, permissions, one-time codes, OAuth linking.

Layer rule: auth/ imports only stdlib, third-party libraries, and core.config.
core.bootstrap wires auth/ together; auth/ never imports core.bootstrap.
"""
