from __future__ import annotations
from decimal import Decimal
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .common import Amount

NumberingStrategy = Literal["counter", "scan"]


class AppSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    language: str = "fr"
    currency: str = "EUR"
    tax_default_rate: Amount = Field(default=Decimal(20), alias="taxDefaultRate")
    use_auto_numbering: bool = Field(default=True, alias="useAutoNumbering")
    default_due_days: int = Field(default=30, alias="defaultDueDays")

    # Numérotation (anciennes clés : prefixFacture / prefixDevis / includeMonth)
    prefix_invoice: str = Field(
        default="FAC",
        validation_alias=AliasChoices("prefixInvoice", "prefixFacture", "prefix_invoice"),
        serialization_alias="prefixInvoice",
    )
    prefix_quote: str = Field(
        default="DEV",
        validation_alias=AliasChoices("prefixQuote", "prefixDevis", "prefix_quote"),
        serialization_alias="prefixQuote",
    )
    include_month_in_number: bool = Field(
        default=True,
        validation_alias=AliasChoices("includeMonthInNumber", "includeMonth", "include_month_in_number"),
        serialization_alias="includeMonthInNumber",
    )
    # une seule stratégie par installation, les deux divergent après suppression
    numbering_strategy: NumberingStrategy = Field(
        default="counter",
        validation_alias=AliasChoices("numberingStrategy", "numbering_strategy"),
        serialization_alias="numberingStrategy",
    )

    def prefix_for(self, doc_type: str) -> str:
        if doc_type == "invoice":
            return self.prefix_invoice or "FAC"
        return self.prefix_quote or "DEV"
