"""
Source registry.

Sources register metadata here so configuration validation can occur before
any fetcher is constructed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Sequence

STAGED = "staged"
PROVIDER = "provider"


@dataclass(frozen=True)
class SourceDescriptor:
    """Metadata describing a sync source."""

    name: str
    title: str
    kind: Literal["staged", "provider"]
    required_config: tuple[str, ...] = ()
    summary: str | None = None

    def readiness(self, config: Mapping[str, Any]) -> dict[str, Any]:
        missing = [key for key in self.required_config if not config.get(key)]
        return {
            "name": self.name,
            "title": self.title,
            "kind": self.kind,
            "status": "ready" if not missing else "missing_config",
            "missing_config": missing,
        }


def get_source_registry() -> Mapping[str, SourceDescriptor]:
    """Return the registry of supported sources in display order."""
    return OrderedDict(
        (
            (
                "ghl",
                SourceDescriptor(
                    name="ghl",
                    title="GoHighLevel",
                    kind=STAGED,
                    summary="Contacts delivered by GoHighLevel webhooks and staged as raw records.",
                ),
            ),
            (
                "manychat",
                SourceDescriptor(
                    name="manychat",
                    title="ManyChat",
                    kind=STAGED,
                    summary="Subscribers delivered by ManyChat webhooks and staged as raw records.",
                ),
            ),
            (
                "csv",
                SourceDescriptor(
                    name="csv",
                    title="CSV Upload",
                    kind=STAGED,
                    summary="Rows from uploaded contact spreadsheets, grouped by import id.",
                ),
            ),
            (
                "stripe",
                SourceDescriptor(
                    name="stripe",
                    title="Stripe",
                    kind=PROVIDER,
                    required_config=("STRIPE_SECRET_KEY",),
                    summary="Payment intents paged from the Stripe API.",
                ),
            ),
            (
                "paypal",
                SourceDescriptor(
                    name="paypal",
                    title="PayPal",
                    kind=PROVIDER,
                    required_config=("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"),
                    summary="Transactions paged from the PayPal reporting API.",
                ),
            ),
        )
    )


def resolve_sources(
    configured: Sequence[str],
    registry: Mapping[str, SourceDescriptor] | None = None,
) -> Iterable[SourceDescriptor]:
    """
    Map configured source names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_source_registry()
    unknown = sorted({source for source in configured if source not in registry})
    if unknown:
        raise ValueError(
            "Unknown sync sources configured: "
            + ", ".join(unknown)
            + ". Update SYNC_SOURCES or register these sources first."
        )
    return tuple(registry[source] for source in configured)
