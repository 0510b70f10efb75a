"""Flask application factory for the memory inspection API.

The ``create_app`` function wraps a ``VirtualMemorySystem`` (a fresh
default one unless given) and returns a Flask app whose endpoints all
speak JSON.  Faults raised by an access are reported in the response
body, not as server errors.
"""

from __future__ import annotations

from typing import Any

from flask import Flask, Response, jsonify, request

from py_vmm.addressing import AccessMode, Protection
from py_vmm.errors import BackingStoreError, MemoryFaultError, OutOfMemoryError
from py_vmm.events import EventKind, EventLog
from py_vmm.system import VirtualMemorySystem

_HTTP_CREATED = 201
_HTTP_BAD_REQUEST = 400
_HTTP_NOT_FOUND = 404
_HTTP_UNPROCESSABLE = 422
_HTTP_UNAVAILABLE = 503


def _error(message: str, status: int, **extra: Any) -> tuple[Response, int]:
    return jsonify({"error": message, **extra}), status


def create_app(system: VirtualMemorySystem | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        system: The machine to expose (defaults to ``VirtualMemorySystem()``).

    Returns:
        A configured Flask application ready to serve.

    """
    vm = system if system is not None else VirtualMemorySystem()
    app = Flask(__name__)

    @app.route("/api/stats")
    def stats() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the machine summary."""
        return jsonify(vm.stats())

    @app.route("/api/events")
    def events() -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Return recorded events, optionally filtered.

        Query parameters ``kind`` and ``asid`` narrow the result.
        """
        sink = vm.events
        if not isinstance(sink, EventLog):
            return jsonify({"events": []})
        try:
            kind = EventKind(request.args["kind"]) if "kind" in request.args else None
            asid = int(request.args["asid"]) if "asid" in request.args else None
        except ValueError as e:
            return _error(str(e), _HTTP_BAD_REQUEST)
        return jsonify(
            {
                "events": [
                    {
                        "ordinal": e.ordinal,
                        "kind": e.kind.value,
                        "asid": e.asid,
                        "virtual_page": e.virtual_page,
                        "frame": e.frame,
                        "cpu": e.cpu,
                    }
                    for e in sink.filter(kind=kind, asid=asid)
                ]
            }
        )

    @app.route("/api/dmesg")
    def dmesg() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the log buffer, one string per entry."""
        return jsonify({"lines": vm.dmesg()})

    @app.route("/api/spaces", methods=["POST"])
    def create_space() -> tuple[Response, int]:  # pyright: ignore[reportUnusedFunction]
        """Create an address space and return its id."""
        return jsonify({"asid": vm.create_address_space()}), _HTTP_CREATED

    @app.route("/api/spaces/<int:asid>/map", methods=["POST"])
    def map_page(asid: int) -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Map a page.

        Expects JSON body: ``{"page": 0, "protection": "rw"}``
        """
        data = request.get_json(silent=True)
        if data is None or "page" not in data:
            return _error("Missing 'page' field", _HTTP_BAD_REQUEST)
        try:
            protection = Protection(data.get("protection", Protection.READ_WRITE))
            frame = vm.map(asid, int(data["page"]), protection)
        except KeyError as e:
            return _error(str(e), _HTTP_NOT_FOUND)
        except ValueError as e:
            return _error(str(e), _HTTP_BAD_REQUEST)
        except (OutOfMemoryError, BackingStoreError) as e:
            return _error(str(e), _HTTP_UNAVAILABLE)
        return jsonify({"asid": asid, "page": int(data["page"]), "frame": frame})

    @app.route("/api/access", methods=["POST"])
    def access() -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Translate one access.

        Expects JSON body: ``{"asid": 1, "address": 4096, "mode": "read", "cpu": 0}``

        Returns:
            JSON with ``physical_address``, ``frame``, ``faults`` and
            ``tlb_hit``; or an ``error`` plus ``fault`` kind.

        """
        data = request.get_json(silent=True)
        if data is None or "asid" not in data or "address" not in data:
            return _error("Missing 'asid' or 'address' field", _HTTP_BAD_REQUEST)
        try:
            result = vm.translate(
                int(data["asid"]),
                int(data["address"]),
                AccessMode(data.get("mode", AccessMode.READ)),
                cpu=int(data.get("cpu", 0)),
            )
        except KeyError as e:
            return _error(str(e), _HTTP_NOT_FOUND)
        except ValueError as e:
            return _error(str(e), _HTTP_BAD_REQUEST)
        except MemoryFaultError as e:
            return _error(str(e), _HTTP_UNPROCESSABLE, fault=e.kind.value)
        except (OutOfMemoryError, BackingStoreError) as e:
            return _error(str(e), _HTTP_UNAVAILABLE)
        return jsonify(
            {
                "physical_address": result.physical_address,
                "frame": result.frame,
                "faults": [kind.value for kind in result.faults],
                "tlb_hit": result.tlb_hit,
            }
        )

    return app


def main() -> None:
    """Run the inspection API development server.

    This is the ``py-vmm-web`` console entry point.
    """
    app = create_app()
    app.run(debug=True, port=8080)
