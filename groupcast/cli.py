from __future__ import annotations
import json
from datetime import datetime
from typing import Any, Optional
import typer
import httpx
from rich import print
from rich.table import Table

app = typer.Typer(help="groupcast CLI - client for the groupcast action endpoint.")

def _http_url(host: str, port: int, path: str) -> str:
    return f"http://{host}:{port}{path}"

def _call(host: str, port: int, api_key: str, user_id: str, action: str, data: dict[str, Any] | None = None,
          timeout: float = 180.0) -> dict[str, Any]:
    headers = {"x-api-key": api_key} if api_key else {}
    body = {"user_id": user_id, "action": action, "data": data or {}}
    res = httpx.post(_http_url(host, port, "/actions"), json=body, headers=headers, timeout=timeout)
    res.raise_for_status()
    out = res.json()
    if not out.get("ok"):
        print(f"[bold red]{action} failed[/bold red]: {out.get('err')}")
        raise typer.Exit(code=1)
    return out.get("payload", {})

@app.command()
def connect(
    user_id: str,
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """Connect the account; prints the pairing code data URI when one is issued."""
    payload = _call(host, port, api_key, user_id, "connect")
    print({k: v for k, v in payload.items() if k != "pairing_code"})
    if payload.get("pairing_code"):
        print("[bold]Pairing code[/bold] (open in a browser to scan):")
        print(payload["pairing_code"])

@app.command()
def status(
    user_id: str,
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """Refresh and show the connection status."""
    print(_call(host, port, api_key, user_id, "status"))

@app.command()
def disconnect(
    user_id: str,
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """Delete the remote channel and reset the local connection."""
    print(_call(host, port, api_key, user_id, "disconnect"))

@app.command("sync-groups")
def sync_groups(
    user_id: str,
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """Refresh the stored group list from the gateway."""
    print(_call(host, port, api_key, user_id, "sync-groups"))

@app.command()
def send(
    user_id: str,
    message: str,
    group: list[str] = typer.Option(..., "--group", "-g", help="Recipient group id, repeatable."),
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """Send a message to groups now."""
    payload = _call(host, port, api_key, user_id, "send-message", {
        "group_ids": group, "message": message, "media_ref": media_url, "media_type": media_type,
    })
    t = Table(title=payload.get("message", "Results"))
    t.add_column("group"); t.add_column("ok"); t.add_column("message id"); t.add_column("error")
    for r in payload.get("results", []):
        t.add_row(r["group_id"], str(r["success"]), str(r.get("remote_message_id") or ""), str(r.get("error") or ""))
    print(t)

@app.command()
def schedule(
    user_id: str,
    message: str,
    send_at: datetime = typer.Option(..., help="ISO timestamp; naive values are UTC."),
    group: list[str] = typer.Option([], "--group", "-g"),
    tag: list[str] = typer.Option([], "--tag", "-t"),
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """Schedule a broadcast to groups and/or tagged groups."""
    payload = _call(host, port, api_key, user_id, "schedule-message", {
        "group_ids": group, "tag_ids": tag, "message": message, "send_at": send_at.isoformat(),
        "media_ref": media_url, "media_type": media_type,
    })
    print(payload)

@app.command()
def messages(
    user_id: str,
    kind: str = typer.Option("scheduled", "--type", help="scheduled|history"),
    limit: int = 20,
    offset: int = 0,
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """List scheduled broadcasts or delivery history."""
    payload = _call(host, port, api_key, user_id, "get-messages", {"type": kind, "limit": limit, "offset": offset})
    rows = payload.get("messages", [])
    t = Table(title=f"{kind} ({len(rows)})")
    if kind == "scheduled":
        t.add_column("id"); t.add_column("send_at"); t.add_column("status"); t.add_column("recipients"); t.add_column("message")
        for m in rows:
            t.add_row(m["id"], m["send_at"], m["status"], str(len(m.get("recipient_group_ids", []))), m["message"][:40])
    else:
        t.add_column("sent_at"); t.add_column("group"); t.add_column("status"); t.add_column("error")
        for m in rows:
            t.add_row(m["sent_at"], m["recipient_group_id"], m["status"], str(m.get("error_detail") or ""))
    print(t)

@app.command()
def raw(
    user_id: str,
    action: str,
    data_json: str = "{}",
    host: str = "127.0.0.1",
    port: int = 8788,
    api_key: str = typer.Option("", envvar="GCAST_CLIENT_KEY"),
):
    """Invoke any action with a JSON data payload."""
    print(_call(host, port, api_key, user_id, action, json.loads(data_json)))

def main():
    """Entry point for the CLI."""
    app()
