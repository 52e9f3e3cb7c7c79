"""
Sui JSON-RPC client and Ed25519 transaction signing.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from pydantic import BaseModel

from .address import bech32_decode, convertbits
from .errors import ConfigurationError

logger = structlog.get_logger()

ED25519_FLAG = 0x00
SUI_PRIVKEY_HRP = "suiprivkey"

# TransactionData intent: scope=0, version=0, app_id=0
TRANSACTION_INTENT = bytes([0, 0, 0])


class SuiRPCConfig(BaseModel):
    """Configuration for a Sui fullnode connection."""

    url: str = "https://fullnode.testnet.sui.io:443"
    timeout: float = 30.0
    gas_budget: int = 50_000_000


class SuiRPCError(Exception):
    """Error from a Sui JSON-RPC call or a failed transaction."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class SuiKeypair:
    """Ed25519 keypair that signs Sui transactions."""

    def __init__(self, secret: bytes):
        if len(secret) != 32:
            raise ConfigurationError("Ed25519 secret key must be 32 bytes")
        self._key = Ed25519PrivateKey.from_private_bytes(secret)
        self.public_key = self._key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    @classmethod
    def from_secret_key(cls, value: str) -> "SuiKeypair":
        """
        Parse a relayer key.

        Accepts bech32 `suiprivkey1...` strings and base64 of a 32-byte secret,
        a flag-prefixed 33-byte secret or a 64-byte secret+public key.
        """
        value = value.strip()
        if not value:
            raise ConfigurationError("RELAYER_PRIVATE_KEY is not set")

        if value.lower().startswith(SUI_PRIVKEY_HRP + "1"):
            decoded = bech32_decode(value)
            if decoded is None or decoded[0] != SUI_PRIVKEY_HRP:
                raise ConfigurationError("Invalid suiprivkey encoding")
            raw = convertbits(decoded[1], 5, 8, False)
            if raw is None or len(raw) != 33:
                raise ConfigurationError("Invalid suiprivkey encoding")
            if raw[0] != ED25519_FLAG:
                raise ConfigurationError("Only Ed25519 relayer keys are supported")
            return cls(bytes(raw[1:]))

        try:
            raw_bytes = base64.b64decode(value, validate=True)
        except ValueError:
            raise ConfigurationError("RELAYER_PRIVATE_KEY is not valid base64") from None

        if len(raw_bytes) == 32:
            return cls(raw_bytes)
        if len(raw_bytes) == 33:
            if raw_bytes[0] != ED25519_FLAG:
                raise ConfigurationError("Only Ed25519 relayer keys are supported")
            return cls(raw_bytes[1:])
        if len(raw_bytes) == 64:
            return cls(raw_bytes[:32])

        raise ConfigurationError(f"Unexpected relayer key length: {len(raw_bytes)} bytes")

    @property
    def address(self) -> str:
        """Sui address: BLAKE2b-256 of flag || public key."""
        return "0x" + blake2b256(bytes([ED25519_FLAG]) + self.public_key).hex()

    def sign_transaction(self, tx_bytes: bytes) -> str:
        """
        Serialized signature (base64 of flag || signature || public key)
        over the intent-prefixed transaction digest.
        """
        digest = blake2b256(TRANSACTION_INTENT + tx_bytes)
        signature = self._key.sign(digest)
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode()


@dataclass
class SuiEvent:
    """An event returned by suix_queryEvents."""

    tx_digest: str
    event_seq: str
    event_type: str
    parsed_json: dict[str, Any]
    timestamp_ms: Optional[int] = None

    @property
    def event_id(self) -> str:
        return f"{self.tx_digest}:{self.event_seq}"

    @classmethod
    def from_rpc(cls, item: dict[str, Any]) -> "SuiEvent":
        event_id = item.get("id") or {}
        timestamp = item.get("timestampMs")
        return cls(
            tx_digest=str(event_id.get("txDigest", "")),
            event_seq=str(event_id.get("eventSeq", "")),
            event_type=item.get("type", ""),
            parsed_json=item.get("parsedJson") or {},
            timestamp_ms=int(timestamp) if timestamp is not None else None,
        )


@dataclass
class EventPage:
    """One page of events plus the cursor for the next page."""

    events: list[SuiEvent] = field(default_factory=list)
    next_cursor: Optional[dict[str, Any]] = None
    has_next_page: bool = False


@dataclass
class OwnedObject:
    object_id: str
    object_type: str


@dataclass
class ExecutionResult:
    """Result of an executed transaction block."""

    digest: str
    created_objects: list[OwnedObject] = field(default_factory=list)


class SuiClient:
    """
    Async Sui JSON-RPC client.

    Write calls build transaction bytes with unsafe_moveCall, sign them
    locally and submit with sui_executeTransactionBlock.
    """

    def __init__(
        self,
        config: SuiRPCConfig,
        keypair: Optional[SuiKeypair] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.keypair = keypair
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Make RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        client = await self._get_client()
        response = await client.post(self.config.url, json=payload)
        response.raise_for_status()
        result = response.json()

        if result.get("error"):
            error = result["error"]
            raise SuiRPCError(error.get("code", -1), error.get("message", "Unknown error"))

        return result.get("result")

    async def query_events(
        self,
        event_type: str,
        cursor: Optional[dict[str, Any]] = None,
        limit: int = 50,
        descending: bool = False,
    ) -> EventPage:
        """Query events of one Move event type, oldest first by default."""
        result = await self._call(
            "suix_queryEvents",
            [{"MoveEventType": event_type}, cursor, limit, descending],
        )
        return EventPage(
            events=[SuiEvent.from_rpc(item) for item in result.get("data", [])],
            next_cursor=result.get("nextCursor"),
            has_next_page=bool(result.get("hasNextPage", False)),
        )

    async def get_owned_objects(self, owner: str) -> list[OwnedObject]:
        """All objects owned by an address, following pagination."""
        objects: list[OwnedObject] = []
        cursor = None

        while True:
            result = await self._call(
                "suix_getOwnedObjects",
                [owner, {"options": {"showType": True}}, cursor, None],
            )
            for item in result.get("data", []):
                data = item.get("data") or {}
                if data.get("objectId"):
                    objects.append(
                        OwnedObject(object_id=data["objectId"], object_type=data.get("type", ""))
                    )

            cursor = result.get("nextCursor")
            if not result.get("hasNextPage") or cursor is None:
                break

        return objects

    def _require_keypair(self) -> SuiKeypair:
        if self.keypair is None:
            raise ConfigurationError("RELAYER_PRIVATE_KEY is not set")
        return self.keypair

    async def move_call(
        self,
        package_id: str,
        module: str,
        function: str,
        arguments: list[Any],
        type_arguments: list[str] | None = None,
    ) -> ExecutionResult:
        """
        Build, sign and execute a single Move call.

        Raises:
            SuiRPCError: if the node rejects the call or execution fails
        """
        keypair = self._require_keypair()

        built = await self._call(
            "unsafe_moveCall",
            [
                keypair.address,
                package_id,
                module,
                function,
                type_arguments or [],
                arguments,
                None,
                str(self.config.gas_budget),
            ],
        )
        tx_bytes_b64 = built["txBytes"]
        signature = keypair.sign_transaction(base64.b64decode(tx_bytes_b64))

        result = await self._call(
            "sui_executeTransactionBlock",
            [
                tx_bytes_b64,
                [signature],
                {"showEffects": True, "showEvents": True, "showObjectChanges": True},
                "WaitForLocalExecution",
            ],
        )

        digest = result.get("digest", "")
        status = (result.get("effects") or {}).get("status") or {}
        if status.get("status") != "success":
            error = status.get("error", "unknown execution failure")
            logger.error("sui_tx_failed", function=function, digest=digest, error=error)
            raise SuiRPCError(-1, f"Transaction {digest} failed: {error}")

        created = [
            OwnedObject(object_id=change["objectId"], object_type=change.get("objectType", ""))
            for change in result.get("objectChanges") or []
            if change.get("type") == "created" and change.get("objectId")
        ]

        logger.info("sui_tx_executed", function=function, digest=digest)
        return ExecutionResult(digest=digest, created_objects=created)
