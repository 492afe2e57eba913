"""
Bundled conformance tests.

Every module exposing ``register(builder)`` adds one top-level group.
``register`` registers them all in protocol order.
"""

from . import authorization, download, kick_off, metadata, status

MODULES = [metadata, kick_off, status, download, authorization]


def register(builder):
    for module in MODULES:
        module.register(builder)
