"""Request-scoped access to the shared Sinalite client."""

from __future__ import annotations

from fastapi import Request

from storefront_api.services.sinalite import SinaliteClient, build_default_sinalite_client


def get_sinalite_client(request: Request) -> SinaliteClient:
    client = getattr(request.app.state, "sinalite_client", None)
    if client is None:
        client = build_default_sinalite_client()
        request.app.state.sinalite_client = client
    return client
