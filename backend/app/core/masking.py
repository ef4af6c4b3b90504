"""
Type-aware masking and display formatting of individual field values.

``ValueCodec.mask`` turns a sensitive value into a redacted, display-safe
preview; ``ValueCodec.format`` renders non-sensitive values for pt-BR display.
Both are total: malformed input yields a placeholder, never an exception.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum as PyEnum
from typing import Any
from zoneinfo import ZoneInfo

_NON_DIGITS = re.compile(r"\D")

EMPTY_PREVIEW = ""
MISSING_DISPLAY = "-"


class MaskType(str, PyEnum):
    """Masking rule families for sensitive fields."""

    CPF = "cpf"
    CNPJ = "cnpj"
    PHONE = "phone"
    EMAIL = "email"
    CARD = "card"
    CVV = "cvv"
    GENERIC = "generic"


class DisplayType(str, PyEnum):
    """Display formats for non-sensitive fields."""

    TEXT = "text"
    NUMBER = "number"
    CURRENCY = "currency"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    STATUS = "status"
    SCORE = "score"


CUSTOMER_FIELD_LABELS: dict[str, str] = {
    "nome": "Nome",
    "email": "E-mail",
    "telefone": "Telefone",
    "cpf": "CPF",
    "endereco": "Endereço",
    "limite_credito": "Limite de Crédito",
    "status": "Status",
    "data_nascimento": "Data de Nascimento",
    "profissao": "Profissão",
    "renda_mensal": "Renda Mensal",
    "score_credito": "Score de Crédito",
}

CUSTOMER_DISPLAY_TYPES: dict[str, DisplayType] = {
    "limite_credito": DisplayType.CURRENCY,
    "renda_mensal": DisplayType.CURRENCY,
    "data_nascimento": DisplayType.DATE,
    "status": DisplayType.STATUS,
    "score_credito": DisplayType.SCORE,
}


@dataclass(slots=True, frozen=True)
class MaskedValue:
    """Masked preview of a value; ``original`` is only set by debug builds."""

    masked: str
    mask_type: MaskType
    original: str | None = None


def mask_card_number(card_number: str) -> str:
    """Keep the last four digits and group the result in blocks of four."""
    digits = _NON_DIGITS.sub("", card_number)
    if len(digits) < 4:
        return "*" * len(card_number)
    masked = "*" * (len(digits) - 4) + digits[-4:]
    return " ".join(masked[i : i + 4] for i in range(0, len(masked), 4))


def as_mask_type(field_type: MaskType | str) -> MaskType:
    if isinstance(field_type, MaskType):
        return field_type
    try:
        return MaskType(str(field_type).strip().lower())
    except ValueError:
        return MaskType.GENERIC


def _coerce_display_type(field_type: DisplayType | str) -> DisplayType:
    if isinstance(field_type, DisplayType):
        return field_type
    try:
        return DisplayType(str(field_type).strip().lower())
    except ValueError:
        return DisplayType.TEXT


def _format_decimal_pt_br(amount: Decimal, places: int = 2) -> str:
    """Format with ``.`` as thousands and ``,`` as decimal separator."""
    text = f"{abs(amount):,.{places}f}"
    text = text.replace(",", "\x00").replace(".", ",").replace("\x00", ".")
    return f"-{text}" if amount < 0 else text


class ValueCodec:
    """Deterministic masking and pt-BR display formatting."""

    def __init__(
        self,
        *,
        card_masker: Callable[[str], str] = mask_card_number,
        timezone: str = "America/Sao_Paulo",
        include_original: bool = False,
    ) -> None:
        self._card_masker = card_masker
        self._tz = ZoneInfo(timezone)
        self._include_original = include_original

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    # ------------------------------------------------------------------
    # Masking
    # ------------------------------------------------------------------

    def mask(self, field_type: MaskType | str, value: Any) -> str:
        """Return the masked preview of ``value`` for the given field type."""
        if not isinstance(value, str) or not value:
            return EMPTY_PREVIEW

        mask_type = as_mask_type(field_type)
        if mask_type is MaskType.CVV:
            return "***"
        if mask_type is MaskType.CARD:
            return self._card_masker(value)

        digits = _NON_DIGITS.sub("", value)
        if mask_type is MaskType.CPF and len(digits) == 11:
            return f"***.***.**{digits[-2:]}"
        if mask_type is MaskType.CNPJ and len(digits) == 14:
            return f"**.***.***/****-{digits[-2:]}"
        if mask_type is MaskType.PHONE and len(digits) >= 10:
            return f"({digits[:2]}) *****-{digits[-2:]}"
        if mask_type is MaskType.EMAIL:
            local, sep, domain = value.partition("@")
            if sep and local and domain:
                return local[0] + "*" * (len(local) - 1) + "@" + domain

        # Malformed typed values fall back to the generic rule, never the raw value.
        return self._mask_generic(value)

    def describe(self, field_type: MaskType | str, value: Any) -> MaskedValue:
        """Masked preview plus the original value when debug previews are enabled."""
        original = value if self._include_original and isinstance(value, str) else None
        return MaskedValue(
            masked=self.mask(field_type, value),
            mask_type=as_mask_type(field_type),
            original=original,
        )

    @staticmethod
    def _mask_generic(value: str) -> str:
        length = len(value)
        if length <= 4:
            return "*" * length
        visible = math.ceil(length * 0.2)
        return value[:visible] + "*" * (length - 2 * visible) + value[-visible:]

    # ------------------------------------------------------------------
    # Display formatting
    # ------------------------------------------------------------------

    def format(self, field_type: DisplayType | str, value: Any) -> str:
        """Render a non-sensitive value for display. Never masks."""
        if value is None:
            return MISSING_DISPLAY

        display_type = _coerce_display_type(field_type)
        if display_type is DisplayType.CURRENCY:
            amount = self._to_decimal(value)
            return f"R$ {_format_decimal_pt_br(amount)}" if amount is not None else str(value)
        if display_type is DisplayType.NUMBER:
            amount = self._to_decimal(value)
            if amount is None:
                return str(value)
            places = 0 if amount == amount.to_integral_value() else 2
            return _format_decimal_pt_br(amount, places)
        if display_type is DisplayType.DATE:
            parsed = self._to_datetime(value)
            return parsed.strftime("%d/%m/%Y") if parsed is not None else str(value)
        if display_type is DisplayType.DATETIME:
            parsed = self._to_datetime(value)
            if parsed is None:
                return str(value)
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(self._tz)
            return parsed.strftime("%d/%m/%Y, %H:%M:%S")
        if display_type is DisplayType.BOOLEAN:
            if isinstance(value, bool):
                return "Sim" if value else "Não"
            return str(value)
        if display_type is DisplayType.STATUS:
            return "Ativo" if value == "ativo" else "Inativo"
        if display_type is DisplayType.SCORE:
            return f"{value} pontos"
        if isinstance(value, bool):
            return "Sim" if value else "Não"
        return str(value)

    def format_field(self, field: str, value: Any) -> str:
        """Format a customer field using its registered display type."""
        return self.format(CUSTOMER_DISPLAY_TYPES.get(field, DisplayType.TEXT), value)

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        if isinstance(value, bool):
            return None
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
        return amount if amount.is_finite() else None

    @staticmethod
    def _to_datetime(value: Any) -> datetime | None:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
        return None


def field_label(field: str) -> str:
    """Human label for a customer field, falling back to the field name."""
    return CUSTOMER_FIELD_LABELS.get(field, field)
