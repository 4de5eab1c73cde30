from __future__ import annotations
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common import Amount, gen_id, today

DocumentType = Literal["invoice", "quote"]

# valeurs utilisées par les anciens exports JSON
LEGACY_TYPES = {"facture": "invoice", "devis": "quote"}


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LineItem(_Model):
    id: str = Field(default_factory=gen_id)
    description: str = ""
    quantity: Amount = Field(default=Decimal(1), ge=0)
    unit_price: Amount = Field(default=Decimal(0), ge=0, alias="unitPrice")


class Client(_Model):
    name: str = ""
    address: str = ""
    email: str = ""
    phone: Optional[str] = None


class Provider(Client):
    siret: str = ""  # 14 chiffres
    tva_number: Optional[str] = Field(default=None, alias="tvaNumber")
    accepted_payments: Optional[str] = Field(default=None, alias="acceptedPayments")
    member_aga: Optional[bool] = Field(default=None, alias="memberAga")


class Document(_Model):
    id: str = Field(default_factory=gen_id)
    document_number: str = Field(alias="documentNumber")
    document_type: DocumentType = Field(alias="documentType")
    issue_date: date = Field(default_factory=today, alias="issueDate")
    due_date: Optional[date] = Field(default=None, alias="dueDate")

    client: Client = Field(default_factory=Client)
    provider: Provider = Field(default_factory=Provider)
    items: List[LineItem] = Field(default_factory=list)

    tax_rate: Amount = Field(default=Decimal(0), ge=0, alias="taxRate")
    discount: Optional[Amount] = Field(default=None, ge=0, le=100)
    advance_payment: Optional[Amount] = Field(default=None, ge=0, alias="advancePayment")
    notes: Optional[str] = None
    # valeur figée (imports / anciens documents), prioritaire sur le calcul
    total_amount: Optional[Amount] = Field(default=None, alias="totalAmount")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")

    # conversion devis -> facture : numéro du devis, jamais son id
    quotation_id: Optional[str] = Field(default=None, alias="quotationId")
    converted_to_invoice: bool = Field(default=False, alias="convertedToInvoice")

    @field_validator("document_type", mode="before")
    @classmethod
    def _legacy_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return LEGACY_TYPES.get(v, v)
        return v

    @field_validator("due_date", mode="before")
    @classmethod
    def _empty_due_date(cls, v: Any) -> Any:
        return None if v == "" else v

    @property
    def is_quote(self) -> bool:
        return self.document_type == "quote"

    def to_json_dict(self) -> Dict[str, Any]:
        """Forme d'export (clés camelCase, champs absents omis)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
