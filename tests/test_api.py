from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from typing_extensions import override

from giftassist.api import create_app
from giftassist.assistant import CompletionService
from giftassist.configuration import Settings
from giftassist.retrieval import LocalCatalog
from giftassist.vectorstores import MemoryVectorStore
from tests.conftest import BrokenVectorStore, HashingEmbedder, make_xlsx

XLSX_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# image references that are not http(s) URLs are never requested
SHEET = [
    ["Name", "Description", "Image", "Color"],
    ["Ceramic Mug", "Hand glazed coffee mug", "mug.png", "Blue"],
    ["Leather Wallet", "Slim wallet in brown leather", "wallet.png", ""],
]


class QuotaError(Exception):
    status_code = 429


class FakeCompletion(CompletionService):
    def __init__(self):
        self.error: Exception | None = None
        self.systems: list[str] = []

    @override
    async def complete(self, system: str, prompt: str) -> str:
        self.systems.append(system)
        if self.error is not None:
            raise self.error
        return f"You asked: {prompt}"


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def catalog() -> LocalCatalog:
    return LocalCatalog.from_records(
        [{"id": "c1", "content": "Red lipstick", "imageUrl": "https://x/l.png"}]
    )


@pytest.fixture
def client(
    completion: FakeCompletion, catalog: LocalCatalog
) -> Iterator[TestClient]:
    app = create_app(
        Settings(max_upload_bytes=1024 * 1024),
        embedder=HashingEmbedder(),
        store=MemoryVectorStore(),
        catalog=catalog,
        completion=completion,
    )
    with TestClient(app) as client:
        yield client


def upload(client: TestClient, data: bytes, **form: str):
    return client.post(
        "/api/portal/upload",
        files={"file": ("products.xlsx", data, XLSX_TYPE)},
        data=form,
    )


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_upload_with_shop_id(client: TestClient):
    response = upload(client, make_xlsx(SHEET), shopId="acme")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "resourceId": "shop-acme",
        "rowsUpserted": 2,
        "imagesValid": 0,
        "imagesInvalid": 2,
    }

    product = client.get("/api/products/shop-acme-1").json()
    assert product == {
        "id": "shop-acme-1",
        "content": "Name: Leather Wallet. Description: Slim wallet in brown leather.",
        "resourceId": "shop-acme",
        "imageUrl": "wallet.png",
        "imageValid": False,
    }


def test_upload_without_shop_id_uses_batch_id(client: TestClient):
    response = upload(client, make_xlsx(SHEET))

    assert response.status_code == 200
    assert response.json()["resourceId"].startswith("batch-")


def test_upload_requires_file(client: TestClient):
    response = client.post("/api/portal/upload", data={"shopId": "acme"})

    assert response.status_code == 400
    assert response.json() == {
        "error": "Missing or invalid file. Send a file in form field 'file'."
    }


def test_upload_rejects_other_file_types(client: TestClient):
    response = client.post(
        "/api/portal/upload",
        files={"file": ("products.csv", b"Name,Description\n", "text/csv")},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid file type. Use .xlsx or .xls."}


def test_upload_rejects_large_files(client: TestClient):
    response = upload(client, b"x" * (1024 * 1024 + 1))

    assert response.status_code == 400
    assert response.json() == {"error": "File too large. Max 1MB allowed."}


def test_upload_reports_missing_column(client: TestClient):
    response = upload(client, make_xlsx([["Name", "Image"], ["Mug", "mug.png"]]))

    assert response.status_code == 400
    assert response.json() == {"error": 'Required column "Description" not found'}


def test_upload_reports_every_bad_row(client: TestClient):
    data = make_xlsx(
        [
            ["Name", "Description", "Image"],
            ["", "Hand glazed mug", "mug.png"],
            ["Wallet", "Leather wallet", "wallet.png"],
            ["Candle", "", ""],
        ]
    )

    response = upload(client, data)

    assert response.status_code == 400
    assert response.json() == {
        "error": "Row 1 is missing required fields: name; "
        "Row 3 is missing required fields: description, image"
    }
    assert client.get("/api/products").json()["products"] == []


def test_upload_rejects_unsafe_shop_id(client: TestClient):
    response = upload(client, make_xlsx(SHEET), shopId="../acme")

    assert response.status_code == 400


def test_upload_rejects_blank_shop_id(client: TestClient):
    response = upload(client, make_xlsx(SHEET), shopId="   ")

    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid shopId.")


def test_upload_backend_failure(catalog: LocalCatalog, completion: FakeCompletion):
    app = create_app(
        Settings(embed_retries=0),
        embedder=HashingEmbedder(failures=1),
        store=MemoryVectorStore(),
        catalog=catalog,
        completion=completion,
    )
    with TestClient(app) as client:
        response = upload(client, make_xlsx(SHEET))

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to process upload. Check server logs."}


def test_search_vector_path(client: TestClient):
    upload(client, make_xlsx(SHEET), shopId="acme")

    response = client.post("/api/search", json={"query": "leather wallet", "topK": 1})

    assert response.status_code == 200
    [product] = response.json()["products"]
    assert product["id"] == "shop-acme-1"
    assert "score" in product


def test_search_falls_back_to_catalog(
    catalog: LocalCatalog, completion: FakeCompletion
):
    app = create_app(
        Settings(),
        embedder=HashingEmbedder(),
        store=BrokenVectorStore(),
        catalog=catalog,
        completion=completion,
    )
    with TestClient(app) as client:
        response = client.post("/api/search", json={"query": "lipstick"})

    assert response.status_code == 200
    assert response.json() == {
        "products": [
            {
                "id": "c1",
                "content": "Red lipstick",
                "imageUrl": "https://x/l.png",
                "score": 4.0,
            }
        ]
    }


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"query": ""},
        {"query": "zzz", "topK": 500},
        {"query": 5},
        {"query": ["a"]},
        ["lipstick"],
        None,
    ],
)
def test_search_always_succeeds(client: TestClient, body: object):
    response = client.post("/api/search", json=body)

    assert response.status_code == 200
    assert response.json() == {"products": []}


def test_list_products(client: TestClient):
    upload(client, make_xlsx(SHEET), shopId="acme")

    first = client.get("/api/products", params={"limit": 1}).json()
    second = client.get(
        "/api/products", params={"limit": 1, "cursor": first["nextCursor"]}
    ).json()

    assert [p["id"] for p in first["products"]] == ["shop-acme-0"]
    assert [p["id"] for p in second["products"]] == ["shop-acme-1"]
    assert second["nextCursor"] is None


def test_list_products_bad_cursor(client: TestClient):
    response = client.get("/api/products", params={"cursor": "nope"})

    assert response.status_code == 500


def test_product_not_found(client: TestClient):
    response = client.get("/api/products/shop-acme-7")

    assert response.status_code == 404
    assert response.json() == {"error": "Product not found"}


def test_chat(client: TestClient, completion: FakeCompletion):
    response = client.post("/api/chat", json={"message": "lipstick for my sister"})

    assert response.status_code == 200
    assert response.json() == {"message": "You asked: lipstick for my sister"}
    assert "Red lipstick" in completion.systems[0]


@pytest.mark.parametrize("body", [{}, {"message": ""}, {"message": "   "}])
def test_chat_requires_message(client: TestClient, body: dict[str, object]):
    response = client.post("/api/chat", json=body)

    assert response.status_code == 400
    assert response.json() == {"error": "Missing or invalid message."}


@pytest.mark.parametrize(
    "error,status_code,message",
    [
        (QuotaError("quota"), 429, "OpenAI quota exceeded."),
        (RuntimeError("boom"), 500, "Internal server error. Check server logs."),
    ],
)
def test_chat_errors(
    client: TestClient,
    completion: FakeCompletion,
    error: Exception,
    status_code: int,
    message: str,
):
    completion.error = error

    response = client.post("/api/chat", json={"message": "hi"})

    assert response.status_code == status_code
    assert response.json() == {"error": message}


def test_search_ignores_badly_typed_top_k(client: TestClient):
    response = client.post("/api/search", json={"query": "lipstick", "topK": "many"})

    assert response.status_code == 200
    assert [p["id"] for p in response.json()["products"]] == ["c1"]


def test_search_with_malformed_json(client: TestClient):
    response = client.post(
        "/api/search",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"products": []}
