#!/usr/bin/env python3
"""Emit deterministic SQL that registers a webhook subscription."""

from __future__ import annotations

import argparse

KNOWN_EVENT_TYPES = ("property.new", "job.completed", "crm.activity")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, endpoint_url: str, event_types: list[str], signing_secret: str | None, inactive: bool) -> str:
    events = ", ".join(_quote_sql(event_type) for event_type in sorted(set(event_types)))
    secret = _quote_sql(signing_secret) if signing_secret else "null"
    is_active = "false" if inactive else "true"

    return f"""-- listing-relay webhook subscription
-- Run against the database referenced by LR_DATABASE_URL.

insert into webhook_subscriptions (endpoint_url, event_types, is_active, signing_secret)
values ({_quote_sql(endpoint_url)}, array[{events}]::text[], {is_active}, {secret})
returning id;
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a webhook subscription.")
    parser.add_argument("--url", required=True, help="Endpoint that receives POSTed events")
    parser.add_argument(
        "--event",
        action="append",
        choices=KNOWN_EVENT_TYPES,
        required=True,
        help="Event type to subscribe to (repeatable)",
    )
    parser.add_argument("--secret", help="HMAC signing secret for the X-Signature header")
    parser.add_argument("--inactive", action="store_true", help="Register the subscription disabled")
    args = parser.parse_args()

    print(
        render_sql(
            endpoint_url=args.url,
            event_types=args.event,
            signing_secret=args.secret,
            inactive=args.inactive,
        )
    )


if __name__ == "__main__":
    main()
