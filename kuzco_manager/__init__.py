"""Kuzco Manager - install and supervise a Kuzco GPU inference worker.

Keeps the vendor worker running under systemd, a detached screen session,
or a raw background process, whichever the host supports.
"""

__version__ = "0.1.0"
