from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventKind(StrEnum):
    token_initialized = "token_initialized"
    wallet_approved = "wallet_approved"
    wallet_revoked = "wallet_revoked"
    tokens_minted = "tokens_minted"
    tokens_transferred = "tokens_transferred"


class ChangeType(StrEnum):
    token_initialized = "token_initialized"
    wallet_approved = "wallet_approved"
    wallet_revoked = "wallet_revoked"
    tokens_minted = "tokens_minted"
    tokens_transferred = "tokens_transferred"
    cap_table_updated = "cap_table_updated"
    corporate_action = "corporate_action"


class AllowlistStatus(StrEnum):
    pending = "pending"
    approved = "approved"
    revoked = "revoked"


class ActionStatus(StrEnum):
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class ActionType(StrEnum):
    stock_split = "stock_split"
    symbol_change = "symbol_change"


# --- decoded domain events -------------------------------------------------


class TokenInitialized(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["token_initialized"] = "token_initialized"
    authority: Optional[str] = None
    mint: str
    symbol: str
    name: str
    decimals: int = 9

    @property
    def security_mint(self) -> str:
        return self.mint


class WalletApproved(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["wallet_approved"] = "wallet_approved"
    token_mint: str
    wallet: str
    approved_by: Optional[str] = None
    timestamp: Optional[int] = None  # unix seconds

    @property
    def security_mint(self) -> str:
        return self.token_mint


class WalletRevoked(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["wallet_revoked"] = "wallet_revoked"
    token_mint: str
    wallet: str
    revoked_by: Optional[str] = None
    timestamp: Optional[int] = None

    @property
    def security_mint(self) -> str:
        return self.token_mint


class TokensMinted(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["tokens_minted"] = "tokens_minted"
    token_mint: str
    recipient: str
    amount: int = Field(ge=0)
    new_supply: Optional[int] = None

    @property
    def security_mint(self) -> str:
        return self.token_mint


class TokensTransferred(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: Literal["tokens_transferred"] = "tokens_transferred"
    token_mint: str
    from_wallet: str = Field(alias="from")
    to_wallet: str = Field(alias="to")
    amount: int = Field(ge=0)

    @property
    def security_mint(self) -> str:
        return self.token_mint


DomainEvent = Annotated[
    Union[TokenInitialized, WalletApproved, WalletRevoked, TokensMinted, TokensTransferred],
    Field(discriminator="kind"),
]

domain_event_adapter: TypeAdapter[Any] = TypeAdapter(DomainEvent)


def parse_domain_event(payload: Dict[str, Any]) -> Any:
    """Validate a decoded payload into one of the closed set of event variants."""
    return domain_event_adapter.validate_python(payload)


# --- ledger transport ------------------------------------------------------


class LogBatch(BaseModel):
    """One transaction's worth of program log lines."""

    signature: str
    logs: List[str] = Field(default_factory=list)
    slot: int
    err: Optional[Any] = None
    block_time: Optional[int] = None


class SignatureInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    signature: str
    slot: int
    err: Optional[Any] = None
    block_time: Optional[int] = None


class TransactionInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    signature: str
    slot: int
    block_time: Optional[int] = None
    log_messages: List[str] = Field(default_factory=list)
    err: Optional[Any] = None


class EventContext(BaseModel):
    """Where in the ledger a decoded event came from."""

    signature: str
    slot: int
    event_index: int = 0
    block_time: Optional[datetime] = None


# --- outbound notifications -----------------------------------------------


class ChangeEvent(BaseModel):
    type: ChangeType
    security: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


# --- cap table read model ------------------------------------------------


class CapTableHolder(BaseModel):
    wallet_address: str
    shares: int
    percentage: float
    block_height: int
    last_updated: Optional[str] = None
    allowlist_status: str = "unknown"
    approved_at: Optional[str] = None


class TokenInfo(BaseModel):
    mint_address: str
    symbol: str
    name: str
    decimals: int
    total_supply: int
    program_id: Optional[str] = None


class SnapshotInfo(BaseModel):
    block_height: Optional[int] = None
    timestamp: str
    is_historical: bool


class CapTableSummary(BaseModel):
    total_holders: int
    total_shares: int
    percentage_distributed: float


class CapTable(BaseModel):
    token: TokenInfo
    snapshot: SnapshotInfo
    summary: CapTableSummary
    holders: List[CapTableHolder]


class StoredSnapshot(BaseModel):
    id: int
    security_mint: str
    block_height: int
    total_supply: int
    holder_count: int
    holders: List[CapTableHolder] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    exact: bool = True


class ConcentrationMetrics(BaseModel):
    top_1_holders: float
    top_5_holders: float
    top_10_holders: float
    gini_coefficient: float
    interpretation: str
    holder_count: int = 0


class TransferRecord(BaseModel):
    transaction_signature: str
    from_wallet: str
    to_wallet: str
    amount: int
    slot: int
    block_time: Optional[str] = None
    status: str = "confirmed"


class TransferPage(BaseModel):
    transfers: List[TransferRecord]
    total: int
    limit: int
    offset: int


# --- corporate actions ----------------------------------------------------


class StockSplitParams(BaseModel):
    token_mint: str
    split_ratio: int
    new_symbol: str
    new_name: str
    executed_by: str
    new_mint: Optional[str] = None
    transaction_signature: Optional[str] = None


class StockSplitResult(BaseModel):
    success: bool
    old_mint: str
    new_mint: Optional[str] = None
    split_ratio: int
    holders_transitioned: int = 0
    holders_expected: int = 0
    action_id: Optional[int] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None


class SymbolChangeParams(BaseModel):
    token_mint: str
    new_symbol: str
    new_name: str
    executed_by: str
    transaction_signature: Optional[str] = None


class SymbolChangeResult(BaseModel):
    success: bool
    token_mint: str
    old_symbol: Optional[str] = None
    new_symbol: str
    action_id: Optional[int] = None
    error: Optional[str] = None
