import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
RUN_TERMINAL = {"completed", "failed", "partially_completed"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _report_error(action: str, resp: httpx.Response) -> int:
    try:
        body = resp.json()
        detail = body.get("detail") if isinstance(body, dict) else body
    except ValueError:
        detail = resp.text
    print(f"Failed to {action}: HTTP {resp.status_code} {detail or ''}".rstrip())
    return 1


def _load_json_arg(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    if value.startswith("@"):
        return json.loads(Path(value[1:]).read_text())
    return json.loads(value)


def _notification(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "notification_platform": args.notify_platform,
        "notification_target": args.notify_target,
    }


def run_account_show(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/accounts/{args.account_id}"), timeout=10)
        if resp.status_code >= 400:
            return _report_error("fetch account", resp)
        account = resp.json()
        print(f"{account['account_id']}: balance {account['balance']}")
        if args.entries:
            resp = client.get(_join_url(args.base_url, f"/api/accounts/{args.account_id}/entries"), timeout=10)
            if resp.status_code >= 400:
                return _report_error("fetch entries", resp)
            for entry in resp.json().get("entries") or []:
                print(
                    f"{entry['created_at']}  {entry['type']:<6}  {entry['amount']:>14}  "
                    f"{entry['balance_before']} -> {entry['balance_after']}  {entry.get('description') or ''}"
                )
    return 0


def run_account_adjust(args: argparse.Namespace) -> int:
    payload = {"amount": args.amount, "description": args.description or ""}
    with httpx.Client() as client:
        resp = client.post(
            _join_url(args.base_url, f"/api/accounts/{args.account_id}/{args.account_cmd}"),
            json=payload,
            timeout=10,
        )
        if resp.status_code >= 400:
            return _report_error(args.account_cmd, resp)
        entry = resp.json()
        print(f"{entry['type']} {entry['amount']}: balance {entry['balance_before']} -> {entry['balance_after']}")
    return 0


def run_generation_submit(args: argparse.Namespace) -> int:
    payload = {
        "account_id": args.account_id,
        "tool_id": args.tool_id,
        "inputs": _load_json_arg(args.inputs, {}),
        **_notification(args),
    }
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/generations"), json=payload, timeout=30)
        if resp.status_code >= 400:
            return _report_error("submit generation", resp)
        print(resp.json()["generation_id"])
    return 0


def run_generation_show(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/generations/{args.generation_id}"), timeout=10)
        if resp.status_code >= 400:
            return _report_error("fetch generation", resp)
        _print_json(resp.json())
    return 0


def run_run_submit(args: argparse.Namespace) -> int:
    payload = {
        "account_id": args.account_id,
        "steps": _load_json_arg(args.steps, []),
        **_notification(args),
    }
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/workflow-runs"), json=payload, timeout=30)
        if resp.status_code >= 400:
            return _report_error("submit workflow run", resp)
        print(resp.json()["run_id"])
    return 0


def run_run_show(args: argparse.Namespace) -> int:
    url = _join_url(args.base_url, f"/api/workflow-runs/{args.run_id}")
    start = time.time()
    with httpx.Client() as client:
        while True:
            resp = client.get(url, timeout=10)
            if resp.status_code >= 400:
                return _report_error("fetch workflow run", resp)
            run = resp.json()
            if not args.wait or run.get("status") in RUN_TERMINAL:
                break
            if time.time() - start > args.timeout:
                print("Timed out waiting for the run to finish.")
                break
            time.sleep(2)
    _print_json(run)
    return 0


def _add_notification_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--notify-platform", default=None, help="Delivery adapter (webhook, log)")
    parser.add_argument("--notify-target", default=None, help="Opaque routing token for the adapter")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Meterflow CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    account = subparsers.add_parser("account", help="Balances and ledger adjustments")
    account_sub = account.add_subparsers(dest="account_cmd")
    show = account_sub.add_parser("show", help="Show balance")
    show.add_argument("account_id")
    show.add_argument("--entries", action="store_true", help="Also list ledger entries")
    for name in ("credit", "debit"):
        adjust = account_sub.add_parser(name, help=f"Manual {name}")
        adjust.add_argument("account_id")
        adjust.add_argument("amount")
        adjust.add_argument("--description", default="")

    generation = subparsers.add_parser("generation", help="Standalone generations")
    generation_sub = generation.add_subparsers(dest="generation_cmd")
    submit = generation_sub.add_parser("submit", help="Submit one tool invocation")
    submit.add_argument("account_id")
    submit.add_argument("tool_id")
    submit.add_argument("--inputs", default=None, help="JSON object, or @file.json")
    _add_notification_args(submit)
    gen_show = generation_sub.add_parser("show", help="Show a generation record")
    gen_show.add_argument("generation_id")

    run = subparsers.add_parser("run", help="Workflow runs")
    run_sub = run.add_subparsers(dest="run_cmd")
    run_submit = run_sub.add_parser("submit", help="Submit a workflow run")
    run_submit.add_argument("account_id")
    run_submit.add_argument("steps", help="JSON list of steps, or @file.json")
    _add_notification_args(run_submit)
    run_show = run_sub.add_parser("show", help="Show a workflow run")
    run_show.add_argument("run_id")
    run_show.add_argument("--wait", action="store_true", help="Wait until the run is terminal")
    run_show.add_argument("--timeout", type=int, default=900, help="Max wait seconds")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "account" and args.account_cmd == "show":
        return run_account_show(args)
    if args.command == "account" and args.account_cmd in ("credit", "debit"):
        return run_account_adjust(args)
    if args.command == "generation" and args.generation_cmd == "submit":
        return run_generation_submit(args)
    if args.command == "generation" and args.generation_cmd == "show":
        return run_generation_show(args)
    if args.command == "run" and args.run_cmd == "submit":
        return run_run_submit(args)
    if args.command == "run" and args.run_cmd == "show":
        return run_run_show(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
