#!/usr/bin/env python3
"""Local stand-in for Supabase's /auth/v1/user endpoint with one token per LokalHunt role."""

from __future__ import annotations

import argparse
import json
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

TOKEN_USERS: dict[str, tuple[str, str]] = {
    "super-admin-token": ("11111111-1111-1111-1111-111111111111", "super_admin"),
    "branch-admin-token": ("22222222-2222-2222-2222-222222222222", "branch_admin"),
    "employer-token": ("33333333-3333-3333-3333-333333333333", "employer"),
    "candidate-token": ("44444444-4444-4444-4444-444444444444", "candidate"),
}


def user_payload_for_token(
    token: str, *, employer_id: str | None = None, assigned_city: str | None = None
) -> dict[str, object] | None:
    entry = TOKEN_USERS.get(token)
    if entry is None:
        return None
    user_id, role = entry
    app_metadata: dict[str, object] = {"role": role}
    if role == "employer" and employer_id:
        app_metadata["employer_id"] = employer_id
    if role == "branch_admin" and assigned_city:
        app_metadata["assigned_city"] = assigned_city
    return {
        "id": user_id,
        "app_metadata": app_metadata,
        "user_metadata": {},
    }


class MockSupabaseHandler(BaseHTTPRequestHandler):
    server_version = "MockSupabase/1.0"
    employer_id: str | None = None
    assigned_city: str | None = None

    def do_GET(self) -> None:  # noqa: N802 - stdlib handler signature
        if self.path == "/healthz":
            self._write_json(HTTPStatus.OK, {"status": "ok"})
            return

        if self.path != "/auth/v1/user":
            self._write_json(HTTPStatus.NOT_FOUND, {"detail": "not found"})
            return

        authorization = self.headers.get("Authorization", "")
        if not authorization.lower().startswith("bearer "):
            self._write_json(HTTPStatus.UNAUTHORIZED, {"detail": "missing bearer token"})
            return

        token = authorization.split(" ", maxsplit=1)[1].strip()
        user = user_payload_for_token(token, employer_id=self.employer_id, assigned_city=self.assigned_city)
        if user is None:
            self._write_json(HTTPStatus.UNAUTHORIZED, {"detail": "invalid token"})
            return

        self._write_json(HTTPStatus.OK, user)

    def log_message(self, _: str, *args: object) -> None:
        if args:
            print("mock-supabase:", *args)

    def _write_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


def main() -> None:
    parser = argparse.ArgumentParser(description="Mock Supabase auth /auth/v1/user endpoint.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=54321)
    parser.add_argument("--employer-id", help="employer_id returned in app_metadata for employer-token")
    parser.add_argument("--assigned-city", help="assigned_city returned in app_metadata for branch-admin-token")
    args = parser.parse_args()

    MockSupabaseHandler.employer_id = args.employer_id
    MockSupabaseHandler.assigned_city = args.assigned_city
    server = ThreadingHTTPServer((args.host, args.port), MockSupabaseHandler)
    print(f"mock-supabase listening on http://{args.host}:{args.port}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
