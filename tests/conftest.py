from datetime import datetime

import pytest

from facturation.models.document import Document
from facturation.services.document_service import DocumentService


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 15, 10, 30))


@pytest.fixture
def service(tmp_path, clock):
    return DocumentService(tmp_path, clock=clock)


@pytest.fixture
def make_doc():
    def _make(number="FAC-2024-03-001", doc_type="invoice", client="Jean Dupont", prices=(100,), **extra):
        data = {
            "documentNumber": number,
            "documentType": doc_type,
            "issueDate": "2024-03-15",
            "dueDate": "2024-04-14",
            "client": {"name": client, "address": "1 rue de la Paix, Paris", "email": "client@example.fr"},
            "provider": {
                "name": "Marie Martin EI",
                "address": "3 place du Marché, Lyon",
                "email": "marie@example.fr",
                "siret": "12345678901234",
            },
            "items": [
                {"description": f"Prestation {i}", "quantity": 1, "unitPrice": p}
                for i, p in enumerate(prices, start=1)
            ],
            "taxRate": 0,
        }
        data.update(extra)
        return Document.model_validate(data)

    return _make
