from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Union

from pydantic import ValidationError

from facturation.config import COUNTERS_FILE, DOCUMENTS_FILE, SETTINGS_FILE, DATA_DIR
from facturation.models.common import gen_id
from facturation.models.document import LEGACY_TYPES, Document, DocumentType
from facturation.services.calculations import to_decimal
from facturation.services.duplicates import DuplicatePair, find_duplicates, find_potential_duplicates
from facturation.services.numbering import CounterService, build_allocator, document_number_exists
from facturation.services.settings_service import SettingsService
from facturation.storage.counter_store import JsonCounterStore
from facturation.storage.json_repo import JsonRepository

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = ("invoice", "quote")


# ---------- Erreurs d'import ---------- #

class DocumentImportError(ValueError):
    pass


class ImportParseError(DocumentImportError):
    """Le contenu n'est pas du JSON valide : tout l'import est abandonné."""


class EmptyImportError(DocumentImportError):
    """Aucun document valide dans le lot."""


class ImportResult(NamedTuple):
    id: Optional[str]              # premier document importé (enregistré ou en attente)
    duplicates: List[Document]     # doublons existants trouvés sur tout le lot
    pending: List[Document]        # documents retenus en attente de confirm_import()
    saved: List[Document]
    warnings: List[str]            # enregistrements ignorés


# ---------- Helpers ---------- #

def _optional_number(v: Any):
    if v is None or v == "":
        return None
    return to_decimal(v)


def _record_problem(rec: Any) -> Optional[str]:
    if not isinstance(rec, dict):
        return "n'est pas un objet"
    if not rec.get("documentType") or not rec.get("documentNumber"):
        return "champs documentType ou documentNumber manquants"
    doc_type = rec["documentType"]
    if not isinstance(doc_type, str) or LEGACY_TYPES.get(doc_type, doc_type) not in DOCUMENT_TYPES:
        return f"type {rec['documentType']} non reconnu"
    if not isinstance(rec.get("client"), dict) or not isinstance(rec.get("provider"), dict) or not isinstance(rec.get("items"), list):
        return "structure incomplète"
    return None


# ---------- Service ---------- #

class DocumentService:
    """
    Cycle de vie des factures et devis : création, mise à jour, suppression,
    conversion devis -> facture, import / export JSON avec contrôle des doublons.

    Mono-utilisateur : les verrous du dépôt et des compteurs sérialisent les
    écritures d'un même processus, mais deux processus sur le même dossier de
    données peuvent perdre une mise à jour (documents ou compteurs).
    """

    def __init__(
        self,
        data_dir: Optional[os.PathLike | str] = None,
        *,
        repo: Optional[JsonRepository] = None,
        counters: Optional[CounterService] = None,
        settings: Optional[SettingsService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        base = Path(data_dir) if data_dir else DATA_DIR
        self.repo = repo or JsonRepository(base / DOCUMENTS_FILE, entity_name="document", key="id")
        self.settings = settings or SettingsService(base / SETTINGS_FILE)
        self.counters = counters or CounterService(JsonCounterStore(base / COUNTERS_FILE))
        self._clock = clock or datetime.now
        self.allocator = build_allocator(self.settings.get, self.counters, self.repo.list_all, self._clock)
        self._pending: Dict[str, Document] = {}

    def _today(self) -> date:
        return self._clock().date()

    # ----- Lecture ----- #

    def _hydrate(self, d: Dict[str, Any]) -> Optional[Document]:
        try:
            return Document.model_validate(d)
        except ValidationError as e:
            # on ignore les entrées invalides sans bloquer le reste
            logger.warning("Document %s illisible ignoré: %s", d.get("id"), e)
            return None

    def list_documents(self, doc_type: Optional[DocumentType] = None) -> List[Document]:
        out: List[Document] = []
        for d in self.repo.list_all():
            doc = self._hydrate(d)
            if doc and (doc_type is None or doc.document_type == doc_type):
                out.append(doc)
        return out

    def get_by_id(self, document_id: str) -> Optional[Document]:
        d = self.repo.get_by_id(document_id)
        return self._hydrate(d) if d else None

    def document_number_exists(self, number: str) -> bool:
        return document_number_exists(number, self.repo.list_all())

    # ----- Numérotation ----- #

    def next_number(self, doc_type: DocumentType) -> str:
        return self.allocator.next_number(doc_type)

    def last_issued_number(self, doc_type: DocumentType) -> str:
        return self.allocator.last_issued_number(doc_type)

    # ----- CRUD ----- #

    def create_document(self, doc_type: DocumentType, data: Union[Document, Mapping[str, Any], None] = None) -> Document:
        """
        Nouveau document : id neuf, numéro attribué par l'allocateur.
        `data` est un Document ou un dict au format d'export (clés camelCase).
        Les doublons probables sont signalés dans les logs, pas bloqués.
        """
        payload = data.to_json_dict() if isinstance(data, Document) else dict(data or {})
        settings = self.settings.get()
        issue = payload.get("issueDate") or self._today()
        payload.update(id=gen_id(), documentType=doc_type, documentNumber="")
        payload["issueDate"] = issue
        payload.setdefault("taxRate", settings.tax_default_rate)
        if not payload.get("dueDate"):
            issue_date = issue if isinstance(issue, date) else date.fromisoformat(str(issue))
            payload["dueDate"] = issue_date + timedelta(days=settings.default_due_days)

        # validation avant attribution : un document invalide ne consomme pas de numéro
        doc = Document.model_validate(payload)
        doc.document_number = self.allocator.next_number(doc_type)

        dups = self.check_duplicates(doc)
        if dups:
            logger.warning(
                "%s %s ressemble à: %s", doc_type, doc.document_number,
                ", ".join(p.similar_to.document_number for p in dups),
            )
        return self.save(doc)

    def save(self, document: Document) -> Document:
        """
        Ajoute ou remplace (même id). Aucun contrôle de collision de numéro ici,
        mais un document déjà enregistré garde son numéro et un devis converti
        le reste, même si la copie reçue est périmée.
        """
        stored = self.repo.get_by_id(document.id)
        if stored is not None:
            keep = {"converted_to_invoice": bool(stored.get("convertedToInvoice")) or document.converted_to_invoice}
            if stored.get("documentNumber"):
                keep["document_number"] = stored["documentNumber"]
            document = document.model_copy(update=keep)
        self.repo.upsert(document)
        return document

    def remove(self, document_id: str) -> bool:
        # pas de cascade, le numéro n'est pas libéré
        self._pending.pop(document_id, None)
        return self.repo.delete(document_id)

    def check_duplicates(self, document: Document) -> List[DuplicatePair]:
        return find_duplicates(document, self.list_documents())

    # ----- Conversion devis -> facture ----- #

    def convert_quote_to_invoice(self, quote_id: str) -> Optional[Document]:
        quote = self.get_by_id(quote_id)
        if quote is None or not quote.is_quote:
            logger.warning("Conversion impossible: aucun devis avec l'id %s", quote_id)
            return None

        number = self.allocator.next_number("invoice")
        invoice = quote.model_copy(
            deep=True,
            update={
                "id": gen_id(),
                "document_type": "invoice",
                "document_number": number,
                "issue_date": self._today(),
                # référence durable : le numéro du devis, pas son id
                "quotation_id": quote.document_number,
                "converted_to_invoice": False,
            },
        )
        quote.converted_to_invoice = True

        # devis marqué + nouvelle facture : une seule écriture
        self.repo.upsert_many([quote, invoice])
        logger.info("Devis %s converti en facture %s", quote.document_number, invoice.document_number)
        return invoice

    # ----- Import / export JSON ----- #

    def _rehydrate(self, rec: Dict[str, Any]) -> Document:
        payload = {
            "id": gen_id(),  # le numéro importé est conservé tel quel
            "documentNumber": str(rec["documentNumber"]),
            "documentType": rec["documentType"],
            "issueDate": rec.get("issueDate") or self._today(),
            "dueDate": rec.get("dueDate") or None,
            "client": rec["client"],
            "provider": rec["provider"],
            "items": rec["items"],
            "taxRate": to_decimal(rec.get("taxRate")),
            "discount": _optional_number(rec.get("discount")),
            "advancePayment": _optional_number(rec.get("advancePayment")),
            "totalAmount": _optional_number(rec.get("totalAmount")),
            "notes": rec.get("notes") or "",
            "paymentMethod": rec.get("paymentMethod"),
            "quotationId": rec.get("quotationId"),
            "convertedToInvoice": bool(rec.get("convertedToInvoice") or False),
        }
        return Document.model_validate(payload)

    def import_from_json(self, raw: Union[str, bytes], check_duplicates: bool = True) -> ImportResult:
        """
        Importe un document ou une liste de documents JSON.

        Les enregistrements invalides sont ignorés (avertissement). Avec
        check_duplicates, un document qui ressemble à un existant n'est pas
        enregistré : il est renvoyé dans `pending` avec les doublons trouvés,
        à valider ensuite par confirm_import().
        """
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Erreur de parsing JSON: %s", e)
            raise ImportParseError("Le fichier n'est pas un JSON valide") from e

        records = data if isinstance(data, list) else [data]
        if not records:
            raise EmptyImportError("Le fichier JSON ne contient aucun document")

        processed: List[Document] = []
        saved: List[Document] = []
        pending: List[Document] = []
        duplicates: List[Document] = []
        warnings: List[str] = []

        for idx, rec in enumerate(records):
            problem = _record_problem(rec)
            if problem is None:
                try:
                    doc = self._rehydrate(rec)
                except ValidationError as e:
                    problem = f"données invalides ({e.error_count()} erreur(s))"
            if problem is not None:
                msg = f"Document #{idx} ignoré: {problem}"
                logger.warning(msg)
                warnings.append(msg)
                continue

            processed.append(doc)
            if check_duplicates:
                matches = find_potential_duplicates(doc, self.list_documents())
                if matches:
                    duplicates.extend(matches)
                    pending.append(doc)
                    self._pending[doc.id] = doc
                    continue

            self.save(doc)
            saved.append(doc)

        if not processed:
            raise EmptyImportError("Aucun document valide n'a pu être importé")

        logger.info(
            "Import: %d enregistré(s), %d en attente, %d ignoré(s)",
            len(saved), len(pending), len(warnings),
        )
        return ImportResult(processed[0].id, duplicates, pending, saved, warnings)

    def confirm_import(self, document_id: str) -> Optional[Document]:
        """Enregistre un document en attente malgré les doublons signalés."""
        doc = self._pending.pop(document_id, None)
        if doc is None:
            logger.warning("Aucun import en attente avec l'id %s", document_id)
            return None
        logger.info("Import confirmé: %s %s", doc.document_type, doc.document_number)
        return self.save(doc)

    def pending_imports(self) -> List[Document]:
        return list(self._pending.values())

    def export_document_json(self, document_id: str) -> Optional[str]:
        doc = self.get_by_id(document_id)
        if doc is None:
            return None
        return json.dumps(doc.to_json_dict(), ensure_ascii=False, indent=2)

    def export_documents_json(self, doc_type: Optional[DocumentType] = None) -> str:
        docs = [d.to_json_dict() for d in self.list_documents(doc_type)]
        return json.dumps(docs, ensure_ascii=False, indent=2)

    @staticmethod
    def export_filename(document: Document) -> str:
        return f"{document.document_type}-{document.document_number}.json"
