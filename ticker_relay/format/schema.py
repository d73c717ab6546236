"""
format/schema.py

Shared data shapes that cross every boundary:
  RawTick     : one upstream miniTicker record, decoded from the feed
  VolumeRow   : latest tick per symbol, for the ranked all-symbols view
  SymbolRow   : one row of recent history, for the single-symbol view
  Page        : pagination envelope pushed to all-symbols sessions
  PageRequest : what a client sends to move its page cursor

Decoding never raises: decode_batch / decode_page_request return a Decoded
result and the caller decides what a failure means.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, TypeAdapter, ValidationError

# Decimals go over the wire as JSON numbers, not strings
WireDecimal = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

T = TypeVar("T")

# Upper bound on a requested page number (32-bit signed max)
MAX_PAGE = 2**31 - 1


class RawTick(BaseModel):
    """
    Binance miniTicker record. Prices arrive as strings to avoid float
    artifacts on the wire; the store parses them.

    Binance fields:
      E = event time (milliseconds since epoch)
      s = symbol
      c/o/h/l = close/open/high/low price
      q = total traded quote asset volume
    """
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True, populate_by_name=True)

    event_time: int = Field(alias="E")
    symbol: str = Field(alias="s")
    close: str = Field(alias="c")
    open: str = Field(alias="o")
    high: str = Field(alias="h")
    low: str = Field(alias="l")
    quote_volume: str = Field(alias="q")


class VolumeRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: WireDecimal
    volume: WireDecimal


class SymbolRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_time: datetime
    symbol: str
    close_price: WireDecimal
    open_price: WireDecimal
    high_price: WireDecimal
    low_price: WireDecimal
    quote_volume: WireDecimal


class Page(BaseModel):
    """One page of the volume ranking. total counts distinct symbols, not rows."""
    model_config = ConfigDict(frozen=True)

    data: list[VolumeRow]
    total: int
    page: int
    per_page: int


class PageRequest(BaseModel):
    """
    Client → server message on the all-symbols channel.
    per_page is accepted but never applied: page size is fixed per session.
    """
    page: Optional[int] = Field(default=None, ge=1, le=MAX_PAGE)
    per_page: Optional[int] = None


@dataclass(frozen=True)
class Decoded(Generic[T]):
    """Tagged decode outcome: either value is set, or error explains why not."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


_BATCH = TypeAdapter(list[RawTick])
_SYMBOL_ROWS = TypeAdapter(list[SymbolRow])


def decode_batch(raw: str | bytes) -> Decoded[list[RawTick]]:
    """Decode one upstream message: a JSON array of miniTicker objects."""
    try:
        return Decoded(value=_BATCH.validate_json(raw))
    except ValidationError as e:
        return Decoded(error=_summarize(e))


def decode_page_request(raw: str | bytes) -> Decoded[PageRequest]:
    try:
        return Decoded(value=PageRequest.model_validate_json(raw))
    except ValidationError as e:
        return Decoded(error=_summarize(e))


def encode_symbol_rows(rows: list[SymbolRow]) -> str:
    return _SYMBOL_ROWS.dump_json(rows).decode()


def _summarize(error: ValidationError) -> str:
    first: dict[str, Any] = error.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return f"{error.error_count()} error(s), first at {loc or '<root>'}: {first['msg']}"
