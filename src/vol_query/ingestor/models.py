"""Data models for the ingestor module.

Ledger payloads (blocks, offers, accounts, assets) and the closed set of
transaction bodies the ingester understands.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


class MalformedLedgerDataError(ValueError):
    """Raised when a ledger payload does not have the expected shape."""


class IngestionError(Exception):
    """Raised when a block cannot be applied; the block stays un-ingested."""


def _require(data: dict[str, Any], key: str, what: str) -> Any:
    try:
        return data[key]
    except (KeyError, TypeError) as e:
        raise MalformedLedgerDataError(f"{what} is missing '{key}'") from e


def _loads(raw: Any, what: str) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedLedgerDataError(f"{what} is not valid JSON: {e}") from e


def parse_expiration(value: Any) -> datetime | None:
    """Parse an ISO-8601 expiration into an aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise MalformedLedgerDataError(f"Invalid expiration {value!r}") from e
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class Consensus:
    """Current ledger height and chain digest as reported by the node."""

    height: int
    digest: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Consensus:
        return cls(
            height=int(_require(data, "height", "Consensus")),
            digest=data.get("digest"),
        )


@dataclass(frozen=True)
class LedgerBlock:
    """A block as served by the ledger node.

    ``raw`` is the block object exactly as received, persisted verbatim
    in the block store.
    """

    height: int
    raw: dict[str, Any] = field(repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerBlock:
        height = int(_require(data, "height", "Block"))
        block = cls(height=height, raw=data)
        block.transactions_raw()  # validate the body eagerly
        return block

    @classmethod
    def from_json(cls, text: str) -> LedgerBlock:
        return cls.from_dict(_loads(text, "Block"))

    def to_json(self) -> str:
        return json.dumps(self.raw, separators=(",", ":"))

    def transactions_raw(self) -> list[dict[str, Any]]:
        body = _loads(_require(self.raw, "body", "Block"), "Block body")
        transactions = _require(body, "transactions", "Block body")
        if not isinstance(transactions, list):
            raise MalformedLedgerDataError("Block body 'transactions' is not a list")
        return transactions

    @property
    def tx_count(self) -> int:
        return len(self.transactions_raw())

    def transactions(self) -> list[Transaction]:
        """Decode every transaction body, in block order."""
        result: list[Transaction] = []
        for tx in self.transactions_raw():
            body = tx.get("bodyIn") if isinstance(tx, dict) else None
            if body is None:
                body = _loads(_require(tx, "body", "Transaction"), "Transaction body")
            result.append(parse_transaction(body))
        return result


@dataclass(frozen=True)
class LedgerOffer:
    """An offer as served by the ledger node. ``seller`` is an account ID."""

    offer_id: str
    seller: str
    assets: tuple[dict[str, Any], ...]
    minimum_price: int
    expiration: datetime | None

    @property
    def asset_ids(self) -> list[str]:
        return [str(a["assetID"]) for a in self.assets]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerOffer:
        data = data.get("offer", data)
        assets = _require(data, "assets", "Offer")
        if not isinstance(assets, list) or not all(
            isinstance(a, dict) and "assetID" in a for a in assets
        ):
            raise MalformedLedgerDataError("Offer 'assets' must be a list of objects with assetID")
        try:
            minimum_price = int(data.get("minimumPrice") or 0)
        except (TypeError, ValueError) as e:
            raise MalformedLedgerDataError("Offer 'minimumPrice' is not an integer") from e
        return cls(
            offer_id=str(_require(data, "offerID", "Offer")),
            seller=str(_require(data, "seller", "Offer")),
            assets=tuple(assets),
            minimum_price=minimum_price,
            expiration=parse_expiration(data.get("expiration")),
        )


@dataclass(frozen=True)
class LedgerAccount:
    account_id: str
    index: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerAccount:
        data = data.get("account", data)
        return cls(
            account_id=str(data.get("name") or data.get("accountID") or ""),
            index=int(_require(data, "index", "Account")),
        )


@dataclass(frozen=True)
class LedgerAsset:
    """An asset with its owner account ID and optional stamp metadata."""

    asset_id: str
    owner: str | None
    payload: dict[str, Any] = field(repr=False)
    stamp: dict[str, Any] | None = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerAsset:
        asset = _require(data, "asset", "Asset response")
        if not isinstance(asset, dict):
            raise MalformedLedgerDataError("Asset response 'asset' is not an object")
        owner = asset.get("owner")
        stamp = data.get("stamp")
        return cls(
            asset_id=str(asset.get("assetID") or _require(asset, "identifier", "Asset")),
            owner=str(owner) if owner else None,
            payload=asset,
            stamp=stamp if isinstance(stamp, dict) else None,
        )


# ============================================================================
# Transactions
# ============================================================================


@dataclass(frozen=True)
class BuyAssets:
    offer_id: str


@dataclass(frozen=True)
class CancelOffer:
    identifier: str


@dataclass(frozen=True)
class OfferAssets:
    asset_identifiers: tuple[str, ...]


@dataclass(frozen=True)
class RunScript:
    """Script invocation; asset IDs are the values of each ``assetParams`` map."""

    invocations: tuple[dict[str, Any], ...]

    @property
    def asset_ids(self) -> list[str]:
        ids: list[str] = []
        for invocation in self.invocations:
            params = invocation.get("assetParams") or {}
            if not isinstance(params, dict):
                raise MalformedLedgerDataError("RUN_SCRIPT 'assetParams' is not an object")
            for value in params.values():
                if isinstance(value, list):
                    ids.extend(str(v) for v in value)
                elif value is not None:
                    ids.append(str(value))
        return ids


@dataclass(frozen=True)
class SendAssets:
    asset_identifiers: tuple[str, ...]


@dataclass(frozen=True)
class IgnoredTransaction:
    type: str


Transaction = BuyAssets | CancelOffer | OfferAssets | RunScript | SendAssets | IgnoredTransaction


def _identifiers(body: dict[str, Any], tx_type: str) -> tuple[str, ...]:
    identifiers = _require(body, "assetIdentifiers", tx_type)
    if not isinstance(identifiers, list):
        raise MalformedLedgerDataError(f"{tx_type} 'assetIdentifiers' is not a list")
    return tuple(str(i) for i in identifiers)


def parse_transaction(body: dict[str, Any]) -> Transaction:
    """Decode a typed transaction body.

    Raises:
        MalformedLedgerDataError: If a recognized type is missing fields.
    """
    if not isinstance(body, dict):
        raise MalformedLedgerDataError("Transaction body is not an object")
    tx_type = str(_require(body, "type", "Transaction"))

    if tx_type == "BUY_ASSETS":
        return BuyAssets(offer_id=str(_require(body, "offerID", tx_type)))
    if tx_type == "CANCEL_OFFER":
        return CancelOffer(identifier=str(_require(body, "identifier", tx_type)))
    if tx_type == "OFFER_ASSETS":
        identifiers = _identifiers(body, tx_type)
        if not identifiers:
            raise MalformedLedgerDataError("OFFER_ASSETS lists no assets")
        return OfferAssets(asset_identifiers=identifiers)
    if tx_type == "RUN_SCRIPT":
        invocations = body.get("invocations") or []
        if not isinstance(invocations, list):
            raise MalformedLedgerDataError("RUN_SCRIPT 'invocations' is not a list")
        return RunScript(invocations=tuple(invocations))
    if tx_type == "SEND_ASSETS":
        return SendAssets(asset_identifiers=_identifiers(body, tx_type))
    return IgnoredTransaction(type=tx_type)
