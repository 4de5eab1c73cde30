import json
from datetime import date

import pytest

from facturation.services.calculations import document_total
from facturation.services.document_service import (
    DocumentService,
    EmptyImportError,
    ImportParseError,
)


def payload(make_doc, *args, **kwargs):
    return make_doc(*args, **kwargs).to_json_dict()


class TestCrud:
    def test_create_assigns_id_and_number(self, service, make_doc):
        draft = make_doc("ignored")
        doc = service.create_document("invoice", draft)
        assert doc.id != draft.id
        assert doc.document_number == "FAC-2024-03-001"
        assert service.get_by_id(doc.id) == doc

    def test_create_applies_defaults(self, service):
        doc = service.create_document("quote", {"client": {"name": "Jean Dupont"}})
        assert doc.document_number == "DEV-2024-03-001"
        assert doc.issue_date == date(2024, 3, 15)
        assert doc.due_date == date(2024, 4, 14)
        assert doc.tax_rate == 20

    def test_invalid_draft_does_not_consume_a_number(self, service):
        with pytest.raises(ValueError):
            service.create_document("invoice", {"discount": 150})
        assert service.last_issued_number("invoice") == "FAC-2024-03-000"

    def test_save_upserts_in_place(self, service, make_doc):
        doc = service.create_document("invoice", make_doc())
        other = service.create_document("invoice", make_doc(client="Alice"))
        doc.notes = "modifié"
        service.save(doc)
        docs = service.list_documents()
        assert [d.id for d in docs] == [doc.id, other.id]
        assert docs[0].notes == "modifié"
        assert docs[0].document_number == "FAC-2024-03-001"

    def test_list_by_type(self, service, make_doc):
        service.create_document("invoice", make_doc())
        service.create_document("quote", make_doc(doc_type="quote"))
        assert [d.document_type for d in service.list_documents("quote")] == ["quote"]

    def test_remove_never_frees_the_number(self, service, make_doc):
        first = service.create_document("invoice", make_doc())
        second = service.create_document("invoice", make_doc())
        assert service.remove(second.id) is True
        assert service.remove(second.id) is False
        third = service.create_document("invoice", make_doc())
        assert third.document_number == "FAC-2024-03-003"
        assert service.document_number_exists(first.document_number)
        assert not service.document_number_exists(second.document_number)

    def test_check_duplicates_on_created_documents(self, service, make_doc):
        a = service.create_document("invoice", make_doc(client="Jean Dupont", prices=(100,)))
        b = service.create_document("invoice", make_doc(client="Jean Dupond", prices=(98,)))
        pairs = service.check_duplicates(b)
        assert [p.similar_to.id for p in pairs] == [a.id]

    def test_invalid_stored_record_is_skipped(self, service, make_doc):
        service.create_document("invoice", make_doc())
        service.repo.upsert({"id": "broken", "documentType": "ticket"})
        assert len(service.list_documents()) == 1
        assert service.get_by_id("broken") is None


class TestConversion:
    def test_convert_quote(self, service, make_doc, clock):
        quote = service.create_document("quote", make_doc(doc_type="quote", issueDate="2024-02-01", taxRate=20))
        invoice = service.convert_quote_to_invoice(quote.id)

        assert invoice is not None
        assert invoice.id != quote.id
        assert invoice.document_type == "invoice"
        assert invoice.document_number == "FAC-2024-03-001"
        assert invoice.quotation_id == quote.document_number
        assert invoice.issue_date == clock().date()
        assert invoice.items == quote.items
        assert invoice.client == quote.client
        assert invoice.due_date == quote.due_date

        stored_quote = service.get_by_id(quote.id)
        assert stored_quote.converted_to_invoice is True
        assert stored_quote.document_number == quote.document_number
        assert service.get_by_id(invoice.id) == invoice

    def test_stale_quote_copy_keeps_converted_flag(self, service, make_doc):
        quote = service.create_document("quote", make_doc(doc_type="quote"))
        service.convert_quote_to_invoice(quote.id)
        quote.notes = "modifié"
        saved = service.save(quote)
        stored = service.get_by_id(quote.id)
        assert saved.converted_to_invoice is True
        assert stored.converted_to_invoice is True
        assert stored.notes == "modifié"

    def test_save_keeps_assigned_number(self, service, make_doc):
        doc = service.create_document("invoice", make_doc())
        doc.document_number = "FAC-2024-03-999"
        service.save(doc)
        assert service.get_by_id(doc.id).document_number == "FAC-2024-03-001"

    def test_persisted_together(self, tmp_path, service, make_doc, clock):
        quote = service.create_document("quote", make_doc(doc_type="quote"))
        invoice = service.convert_quote_to_invoice(quote.id)
        reopened = DocumentService(tmp_path, clock=clock)
        assert reopened.get_by_id(quote.id).converted_to_invoice
        assert reopened.get_by_id(invoice.id).quotation_id == quote.document_number

    def test_unknown_id_returns_none_without_writes(self, service, tmp_path):
        before = (tmp_path / "documents.json").read_text(encoding="utf-8")
        assert service.convert_quote_to_invoice("nope") is None
        assert (tmp_path / "documents.json").read_text(encoding="utf-8") == before
        assert not (tmp_path / "counters.json").exists()

    def test_invoice_cannot_be_converted(self, service, make_doc):
        invoice = service.create_document("invoice", make_doc())
        assert service.convert_quote_to_invoice(invoice.id) is None
        assert service.last_issued_number("invoice") == "FAC-2024-03-001"


class TestImport:
    def test_single_object(self, service, make_doc):
        result = service.import_from_json(json.dumps(payload(make_doc, "EXT-42")))
        doc = service.get_by_id(result.id)
        assert doc.document_number == "EXT-42"
        assert result.duplicates == [] and result.pending == []

    def test_invalid_json(self, service):
        with pytest.raises(ImportParseError):
            service.import_from_json("{pas du json")

    def test_empty_batch(self, service):
        with pytest.raises(EmptyImportError):
            service.import_from_json("[]")

    def test_nothing_valid(self, service):
        with pytest.raises(EmptyImportError):
            service.import_from_json(json.dumps([{"documentNumber": "X"}, 3]))

    def test_malformed_record_is_skipped_with_warning(self, service, make_doc):
        good = payload(make_doc, "FAC-1")
        bad = payload(make_doc, "FAC-2")
        del bad["documentType"]
        result = service.import_from_json(json.dumps([bad, good]))
        assert len(result.saved) + len(result.pending) == 1
        assert len(result.warnings) == 1
        assert "documentType" in result.warnings[0]
        assert service.get_by_id(result.id).document_number == "FAC-1"

    @pytest.mark.parametrize("mutate", [
        lambda r: r.update(documentType="ticket"),
        lambda r: r.pop("client"),
        lambda r: r.update(items="pas une liste"),
        lambda r: r.update(taxRate=-5),
    ])
    def test_record_validation(self, service, make_doc, mutate):
        bad = payload(make_doc, "FAC-2")
        mutate(bad)
        result = service.import_from_json(json.dumps([bad, payload(make_doc, "FAC-1")]))
        assert len(result.warnings) == 1

    def test_coercion_and_defaults(self, service, make_doc, clock):
        rec = payload(make_doc, "FAC-9")
        rec.update(taxRate="20", discount="", totalAmount="150.5", documentType="facture")
        for key in ("notes", "issueDate", "dueDate", "convertedToInvoice"):
            rec.pop(key, None)
        doc = service.get_by_id(service.import_from_json(json.dumps(rec)).id)
        assert doc.document_type == "invoice"
        assert doc.tax_rate == 20
        assert doc.discount is None
        assert str(doc.total_amount) == "150.5"
        assert doc.notes == ""
        assert doc.issue_date == clock().date()
        assert doc.due_date is None
        assert doc.converted_to_invoice is False

    def test_duplicates_are_held_pending(self, service, make_doc):
        existing = service.create_document("invoice", make_doc(client="Jean Dupont", prices=(100,)))
        dup = payload(make_doc, existing.document_number, client="Quelqu'un", prices=(3,))
        fresh = payload(make_doc, "FAC-OTHER", client="Alice", prices=(700,), issueDate="2023-06-01")
        result = service.import_from_json(json.dumps([dup, fresh]))

        assert [d.id for d in result.duplicates] == [existing.id]
        assert len(result.pending) == 1
        assert result.id == result.pending[0].id
        assert service.get_by_id(result.pending[0].id) is None
        assert [d.document_number for d in result.saved] == ["FAC-OTHER"]

        confirmed = service.confirm_import(result.pending[0].id)
        assert confirmed is not None
        assert service.get_by_id(confirmed.id).document_number == existing.document_number
        assert service.pending_imports() == []
        assert service.confirm_import(result.pending[0].id) is None

    def test_duplicate_check_disabled(self, service, make_doc):
        existing = service.create_document("invoice", make_doc())
        result = service.import_from_json(json.dumps(existing.to_json_dict()), check_duplicates=False)
        assert result.pending == []
        assert len(service.list_documents()) == 2


class TestExport:
    def test_round_trip(self, service, make_doc):
        original = service.create_document(
            "invoice",
            make_doc(
                prices=(12.5, 80), taxRate=20, discount=10, advancePayment=15,
                notes="Merci", paymentMethod="Virement", quotationId="DEV-2024-02-003",
            ),
        )
        exported = service.export_document_json(original.id)
        result = service.import_from_json(exported, check_duplicates=False)
        copy = service.get_by_id(result.id)

        assert copy.id != original.id
        assert copy.model_dump(exclude={"id"}) == original.model_dump(exclude={"id"})
        assert document_total(copy) == document_total(original)

    def test_export_all_filtered(self, service, make_doc):
        service.create_document("invoice", make_doc())
        service.create_document("quote", make_doc(doc_type="quote"))
        quotes = json.loads(service.export_documents_json("quote"))
        assert [q["documentType"] for q in quotes] == ["quote"]
        assert len(json.loads(service.export_documents_json())) == 2

    def test_export_unknown(self, service):
        assert service.export_document_json("nope") is None

    def test_export_filename(self, make_doc):
        assert DocumentService.export_filename(make_doc("DEV-2024-03-001", doc_type="quote")) == "quote-DEV-2024-03-001.json"


class TestScanStrategy:
    def test_scan_numbering_from_documents(self, tmp_path, clock, make_doc):
        (tmp_path / "settings.json").write_text(json.dumps({"numberingStrategy": "scan"}), encoding="utf-8")
        svc = DocumentService(tmp_path, clock=clock)
        svc.import_from_json(json.dumps(payload(make_doc, "FAC-2024-03-007")))
        assert svc.create_document("invoice", make_doc()).document_number == "FAC-2024-03-008"
        assert not (tmp_path / "counters.json").exists()
