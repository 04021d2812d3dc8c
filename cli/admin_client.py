"""Operator CLI for a running albumsync service."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
from urllib.parse import quote, urlparse

import httpx

_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
TOKEN_ENV_VAR = "ALBUMSYNC_ADMIN_TOKEN"


class AdminClient:
    """Thin client over the albumsync HTTP API."""

    def __init__(
        self,
        server_url: str,
        token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(
            base_url=self.server_url,
            headers=headers,
            timeout=30.0,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> AdminClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _json(self, resp: httpx.Response) -> Any:
        resp.raise_for_status()
        return resp.json()

    def metrics(self) -> dict[str, Any]:
        """Fetch health and run metrics. A 503 still carries the snapshot."""
        resp = self.client.get("/metrics")
        if resp.status_code == 503:
            result: dict[str, Any] = resp.json()
            return result
        return self._json(resp)

    def list_mappings(
        self,
        page: int = 1,
        page_size: int = 50,
        search: str | None = None,
        sort_by: str = "synced_at",
        sort_order: str = "desc",
    ) -> dict[str, Any]:
        params: dict[str, str | int] = {
            "page": page,
            "page_size": page_size,
            "sort_by": sort_by,
            "sort_order": sort_order,
        }
        if search:
            params["search"] = search
        return self._json(self.client.get("/api/mappings", params=params))

    def get_mapping(self, source_id: str) -> dict[str, Any] | None:
        resp = self.client.get(f"/api/mappings/{quote(source_id, safe='')}")
        if resp.status_code == 404:
            return None
        return self._json(resp)

    def get_mapping_by_target(self, target_id: str) -> dict[str, Any] | None:
        resp = self.client.get(f"/api/mappings/by-target/{quote(target_id, safe='')}")
        if resp.status_code == 404:
            return None
        return self._json(resp)

    def delete_mapping(self, source_id: str) -> int:
        """Delete one mapping; returns the number of rows removed (0 or 1)."""
        result = self._json(self.client.delete(f"/api/mappings/{quote(source_id, safe='')}"))
        return int(result["deleted"])

    def bulk_delete(self, source_ids: list[str]) -> int:
        result = self._json(
            self.client.post("/api/mappings/bulk-delete", json={"source_ids": source_ids})
        )
        return int(result["deleted"])

    def run_sync(self) -> bool:
        """Trigger a cycle; False when one was already running."""
        return bool(self._json(self.client.post("/api/sync/run"))["started"])


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def _print_metrics(data: dict[str, Any]) -> None:
    print(f"Status:         {data.get('status')}")
    print(f"Uptime:         {data.get('uptime')}s")
    print(f"Authenticated:  {data.get('target_authenticated')}")
    print(f"Running:        {data.get('sync_running')}")
    print(f"Total runs:     {data.get('total_runs')} ({data.get('total_failures')} failed)")
    last_run = data.get("last_run")
    if last_run is None:
        print("Last run:       never")
        return
    outcome = "ok" if last_run["success"] else f"FAILED ({last_run.get('error')})"
    print(f"Last run:       {last_run['timestamp']} {outcome}")
    print(
        f"  added={last_run['added']} removed={last_run['removed']} "
        f"failed={last_run['failed']} skipped_removals={last_run['skipped_removals']} "
        f"duration={last_run['duration_ms']}ms"
    )


def _print_page(data: dict[str, Any]) -> None:
    pagination = data["pagination"]
    for row in data["data"]:
        print(f"{row['source_id']}  {row['target_id']}  {row['synced_at']}")
    print(
        f"Page {pagination['page']}/{pagination['total_pages']} "
        f"({pagination['total_items']} mapping(s))"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="albumsync-admin",
        description="Inspect and manage a running albumsync service",
    )
    parser.add_argument("--server", "-s", default="http://localhost:3000", help="Server URL")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--token", help=f"Admin token (default: ${TOKEN_ENV_VAR})")
    parser.add_argument("--json", action="store_true", help="Print raw JSON responses")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("metrics", help="Show health and last run")

    list_parser = subparsers.add_parser("list", help="List mappings")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--page-size", type=int, default=50)
    list_parser.add_argument("--search")
    list_parser.add_argument("--sort-by", choices=["synced_at", "source_id"], default="synced_at")
    list_parser.add_argument("--sort-order", choices=["asc", "desc"], default="desc")

    show_parser = subparsers.add_parser("show", help="Show one mapping")
    show_parser.add_argument("id")
    show_parser.add_argument(
        "--by-target", action="store_true", help="Look up by target id instead of source id"
    )

    delete_parser = subparsers.add_parser("delete", help="Forget one mapping (forces a resync)")
    delete_parser.add_argument("source_id")

    bulk_parser = subparsers.add_parser("bulk-delete", help="Forget several mappings")
    bulk_parser.add_argument("source_ids", nargs="+")

    subparsers.add_parser("run", help="Trigger a sync cycle now")
    return parser


def main(argv: list[str] | None = None, transport: httpx.BaseTransport | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    token = args.token or os.environ.get(TOKEN_ENV_VAR)
    with AdminClient(server_url, token, transport=transport) as client:
        try:
            return _dispatch(client, args)
        except httpx.HTTPStatusError as exc:
            print(f"Error: server returned HTTP {exc.response.status_code}")
            return 1
        except httpx.HTTPError as exc:
            print(f"Error: {exc}")
            return 1


def _dispatch(client: AdminClient, args: argparse.Namespace) -> int:
    if args.command == "metrics":
        data = client.metrics()
        if args.json:
            print(json.dumps(data, indent=2))
        else:
            _print_metrics(data)
    elif args.command == "list":
        page = client.list_mappings(
            page=args.page,
            page_size=args.page_size,
            search=args.search,
            sort_by=args.sort_by,
            sort_order=args.sort_order,
        )
        if args.json:
            print(json.dumps(page, indent=2))
        else:
            _print_page(page)
    elif args.command == "show":
        record = (
            client.get_mapping_by_target(args.id) if args.by_target else client.get_mapping(args.id)
        )
        if record is None:
            print(f"No mapping for {args.id}")
            return 1
        print(json.dumps(record, indent=2))
    elif args.command == "delete":
        deleted = client.delete_mapping(args.source_id)
        print(f"Deleted {deleted} mapping(s)")
    elif args.command == "bulk-delete":
        deleted = client.bulk_delete(args.source_ids)
        print(f"Deleted {deleted} of {len(args.source_ids)} mapping(s)")
    elif args.command == "run":
        if client.run_sync():
            print("Sync started")
        else:
            print("Sync already in progress")
    return 0


if __name__ == "__main__":
    sys.exit(main())
