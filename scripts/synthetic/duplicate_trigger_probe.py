#!/usr/bin/env python3
"""Synthetic probe for duplicate payment triggers.

Fires the callback, poll and success-page triggers for one paid reference
concurrently and checks that every response names the same adoption and that
the service created at most one adoption for it.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

RECONCILIATION_METRIC = "adoption_reconciliation_total"

_METRIC_LINE = re.compile(r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>[^}]*)\})?\s+(?P<value>\S+)$")
_LABEL = re.compile(r'(?P<key>[a-zA-Z_][a-zA-Z0-9_]*)="(?P<value>[^"]*)"')


class ProbeError(RuntimeError):
    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = dict(context or {})


@dataclass(slots=True)
class TriggerResult:
    trigger: str
    status_code: int
    adoption_status: str | None
    adoption_id: int | None
    elapsed_ms: float


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Probe adoption idempotency under duplicate triggers")
    parser.add_argument(
        "--base-url",
        default=os.getenv("ADOPTION_BASE_URL", "http://127.0.0.1:8000"),
        help="Base URL for the adoption service (default: %(default)s or ADOPTION_BASE_URL)",
    )
    parser.add_argument("--reference-no", required=True, help="Reference number of a payment to settle")
    parser.add_argument("--bill-code", required=True, help="Gateway bill code of the same payment")
    parser.add_argument(
        "--subject",
        default=os.getenv("ADOPTION_PROBE_SUBJECT"),
        help="Identity subject that owns the payment, required for poll triggers",
    )
    parser.add_argument(
        "--rounds",
        type=int,
        default=3,
        help="How many copies of each trigger to fire at once (default: %(default)s)",
    )
    parser.add_argument(
        "--metrics-path",
        default=os.getenv("ADOPTION_METRICS_PATH", "/metrics"),
        help="Path to Prometheus metrics endpoint (default: %(default)s or ADOPTION_METRICS_PATH)",
    )
    parser.add_argument("--skip-metrics", action="store_true", help="Skip the reconciliation counter check")
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=15.0,
        help="HTTP client timeout in seconds (default: %(default)s)",
    )
    return parser.parse_args()


def _created_total(text: str) -> float:
    total = 0.0
    for line in text.splitlines():
        match = _METRIC_LINE.match(line.strip())
        if not match or match.group("name") != RECONCILIATION_METRIC:
            continue
        labels = {item.group("key"): item.group("value") for item in _LABEL.finditer(match.group("labels") or "")}
        if labels.get("outcome") == "created":
            total += float(match.group("value"))
    return total


async def _fetch_created_total(client: httpx.AsyncClient, path: str) -> float:
    response = await client.get(path)
    response.raise_for_status()
    return _created_total(response.text)


async def _fire(client: httpx.AsyncClient, trigger: str, args: argparse.Namespace) -> TriggerResult:
    start = time.monotonic()
    if trigger == "callback":
        response = await client.post(
            "/payments/callback",
            data={"billcode": args.bill_code, "order_id": args.reference_no, "status_id": "1"},
        )
    elif trigger == "poll":
        response = await client.post(
            "/payments/poll",
            json={"referenceNo": args.reference_no},
            headers={"X-Identity-Subject": args.subject},
        )
    else:
        response = await client.post(
            "/payments/success-visit",
            json={"referenceNo": args.reference_no, "billCode": args.bill_code, "statusId": "1"},
        )
    elapsed_ms = (time.monotonic() - start) * 1000.0
    body = response.json() if response.status_code == 200 else {}
    return TriggerResult(
        trigger=trigger,
        status_code=response.status_code,
        adoption_status=body.get("adoptionStatus"),
        adoption_id=body.get("adoptionId"),
        elapsed_ms=elapsed_ms,
    )


async def run_probe(args: argparse.Namespace) -> dict[str, Any]:
    triggers = ["callback", "success_visit"] + (["poll"] if args.subject else [])
    async with httpx.AsyncClient(base_url=args.base_url, timeout=httpx.Timeout(args.request_timeout)) as client:
        created_before = 0.0 if args.skip_metrics else await _fetch_created_total(client, args.metrics_path)

        results = await asyncio.gather(
            *(_fire(client, trigger, args) for trigger in triggers for _ in range(args.rounds))
        )

        failures = [result for result in results if result.status_code != 200]
        if failures:
            raise ProbeError(
                "Some triggers were rejected",
                context={"failures": [(item.trigger, item.status_code) for item in failures]},
            )

        adoption_ids = {result.adoption_id for result in results if result.adoption_id is not None}
        statuses = [result.adoption_status for result in results]
        if len(adoption_ids) > 1:
            raise ProbeError("Triggers reported different adoptions", context={"adoption_ids": sorted(adoption_ids)})
        if statuses.count("created") > 1:
            raise ProbeError("More than one trigger created an adoption", context={"statuses": statuses})
        if not adoption_ids:
            raise ProbeError("No trigger produced an adoption", context={"statuses": statuses})

        created_delta = None
        if not args.skip_metrics:
            created_delta = await _fetch_created_total(client, args.metrics_path) - created_before
            if created_delta > 1:
                raise ProbeError(
                    f"{RECONCILIATION_METRIC} counted more than one creation",
                    context={"delta": created_delta},
                )

    return {
        "status": "ok",
        "referenceNo": args.reference_no,
        "adoptionId": adoption_ids.pop(),
        "statuses": statuses,
        "createdDelta": created_delta,
        "maxLatencyMs": round(max(result.elapsed_ms for result in results), 2),
    }


async def main_async() -> int:
    args = parse_args()
    try:
        result = await run_probe(args)
    except ProbeError as exc:
        print(json.dumps({"status": "error", "message": str(exc), "context": exc.context}, indent=2, sort_keys=True))
        return 1
    except httpx.HTTPError as exc:
        print(json.dumps({"status": "error", "message": str(exc)}, indent=2, sort_keys=True))
        return 1
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
