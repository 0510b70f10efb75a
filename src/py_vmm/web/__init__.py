"""JSON inspection API for a simulated memory system.

This package provides a Flask application that exposes one
``VirtualMemorySystem`` over HTTP, for dashboards and external metrics
collectors.  It is an **optional** extra — install with::

    pip install py-vmm[web]

The ``create_app`` factory in ``app.py`` serves:

- ``GET /api/stats`` — frame, TLB, and per-space fault counters.
- ``GET /api/events`` — the structured event stream, filterable.
- ``GET /api/dmesg`` — the system log buffer.
- ``POST /api/spaces`` — create an address space.
- ``POST /api/spaces/<asid>/map`` — map a page.
- ``POST /api/access`` — translate one access.
"""
