"""Tests for the HTTP API."""
import io

import pytest
from werkzeug.datastructures import FileStorage

from clinrag.errors import DocumentNotFound, IngestionFailed, InvalidParameter
from clinrag.main import create_app, status_for


PROTOCOL = "Vitamin D deficiency protocol: cholecalciferol with meals, retest in twelve weeks."

HEADERS_A = {"X-Tenant-Id": "clinic-a", "X-User-Id": "user-1"}
HEADERS_B = {"X-Tenant-Id": "clinic-b", "X-User-Id": "user-2"}
SUPERADMIN_A = {**HEADERS_A, "X-User-Role": "superadmin"}


@pytest.fixture
async def client(knowledge_base):
    app = create_app(knowledge_base)
    async with app.test_app() as test_app:
        yield test_app.test_client()


async def upload(client, text=PROTOCOL, headers=HEADERS_A, name="protocol.txt",
                 content_type="text/plain", category="clinical-protocols", **form):
    return await client.post(
        "/api/rag/documents",
        headers=headers,
        form={"category": category, **form},
        files={
            "file": FileStorage(
                io.BytesIO(text.encode("utf-8")), filename=name, content_type=content_type
            )
        },
    )


async def test_health(client):
    response = await client.get("/health/live")
    assert response.status_code == 200

    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert (await response.get_json())["status"] == "healthy"


async def test_upload_document(client):
    response = await upload(client)

    assert response.status_code == 201
    document = (await response.get_json())["document"]
    assert document["status"] == "completed"
    assert document["tenant_id"] == "clinic-a"
    assert document["original_file_name"] == "protocol.txt"
    assert document["processing"]["total_chunks"] == 1


async def test_upload_requires_identity(client):
    response = await upload(client, headers={"X-User-Id": "user-1"})

    assert response.status_code == 400
    error = (await response.get_json())["error"]
    assert error["kind"] == "invalid_parameter"


async def test_upload_unsupported_type(client):
    response = await upload(client, name="archive.zip", content_type="application/zip")

    assert response.status_code == 415
    assert (await response.get_json())["error"]["kind"] == "unsupported_media_type"


async def test_upload_unknown_category(client):
    response = await upload(client, category="astrology")
    assert response.status_code == 400


async def test_upload_without_file(client):
    response = await client.post(
        "/api/rag/documents", headers=HEADERS_A, form={"category": "nutrition"}
    )
    assert response.status_code == 400


async def test_failed_ingestion_reports_document(client, provider):
    provider.failures = [401]

    response = await upload(client)

    assert response.status_code == 422
    error = (await response.get_json())["error"]
    assert error["kind"] == "ingestion_failed"
    assert error["cause"] == "embedding_provider_error"
    assert error["document_id"]

    response = await client.get(f"/api/rag/documents/{error['document_id']}", headers=HEADERS_A)
    assert (await response.get_json())["document"]["status"] == "error"


async def test_global_upload_requires_superadmin(client):
    response = await upload(client, scope="global")
    assert response.status_code == 403

    response = await upload(client, headers=SUPERADMIN_A, scope="global")
    assert response.status_code == 201
    document = (await response.get_json())["document"]
    assert document["is_global"]

    response = await client.get("/api/rag/documents", headers=HEADERS_B)
    assert (await response.get_json())["total"] == 1


async def test_global_tenant_header_is_rejected(client):
    headers = {"X-Tenant-Id": "global", "X-User-Id": "user-9"}

    response = await upload(client, headers=headers)
    assert response.status_code == 403
    assert (await response.get_json())["error"]["kind"] == "permission_denied"

    response = await client.get("/api/rag/documents", headers=headers)
    assert response.status_code == 403


async def test_global_document_changes_require_superadmin(client):
    response = await upload(client, headers=SUPERADMIN_A, scope="global")
    document_id = (await response.get_json())["document"]["id"]

    response = await client.delete(f"/api/rag/documents/{document_id}", headers=HEADERS_A)
    assert response.status_code == 404

    response = await client.delete(
        f"/api/rag/documents/{document_id}?scope=global", headers=HEADERS_A
    )
    assert response.status_code == 403

    response = await client.post(
        f"/api/rag/documents/{document_id}/reprocess?scope=global", headers=HEADERS_A
    )
    assert response.status_code == 403

    response = await client.post(
        f"/api/rag/documents/{document_id}/reprocess?scope=global", headers=SUPERADMIN_A
    )
    assert response.status_code == 200
    assert (await response.get_json())["document"]["status"] == "completed"

    response = await client.delete(
        f"/api/rag/documents/{document_id}?scope=global", headers=SUPERADMIN_A
    )
    assert response.status_code == 204

    response = await client.get(f"/api/rag/documents/{document_id}", headers=HEADERS_B)
    assert response.status_code == 404


async def test_list_documents(client):
    await upload(client)
    await upload(client, text="Sleep hygiene notes.", name="sleep.txt", category="nutrition")

    response = await client.get("/api/rag/documents?category=nutrition", headers=HEADERS_A)
    body = await response.get_json()
    assert body["total"] == 1
    assert body["documents"][0]["original_file_name"] == "sleep.txt"

    response = await client.get("/api/rag/documents", headers=HEADERS_B)
    assert (await response.get_json())["total"] == 0


async def test_list_documents_bad_paging(client):
    response = await client.get("/api/rag/documents?page=abc", headers=HEADERS_A)
    assert response.status_code == 400

    response = await client.get("/api/rag/documents?page_size=500", headers=HEADERS_A)
    assert response.status_code == 400


async def test_search(client):
    await upload(client)

    response = await client.post(
        "/api/rag/search",
        headers=HEADERS_A,
        json={"query": "vitamin D treatment", "threshold": 0.0, "include_context": True},
    )

    assert response.status_code == 200
    body = await response.get_json()
    assert body["count"] == 1
    assert body["results"][0]["score"] > 0
    assert body["results"][0]["source"] == "protocol.txt"
    assert body["context"].startswith("[Source 1: protocol.txt]")


async def test_search_is_tenant_scoped(client):
    await upload(client)

    response = await client.post(
        "/api/rag/search", headers=HEADERS_B, json={"query": "vitamin D", "threshold": 0.0}
    )
    assert (await response.get_json())["count"] == 0


@pytest.mark.parametrize(
    "body",
    [{}, {"query": 5}, {"query": "vitamin", "limit": 0}, {"query": "vitamin", "threshold": 2}],
)
async def test_search_rejects_bad_input(client, body):
    response = await client.post("/api/rag/search", headers=HEADERS_A, json=body)
    assert response.status_code == 400


async def test_delete_document(client):
    document_id = (await (await upload(client)).get_json())["document"]["id"]

    response = await client.delete(f"/api/rag/documents/{document_id}", headers=HEADERS_B)
    assert response.status_code == 404

    response = await client.delete(f"/api/rag/documents/{document_id}", headers=HEADERS_A)
    assert response.status_code == 204

    response = await client.get(f"/api/rag/documents/{document_id}", headers=HEADERS_A)
    assert response.status_code == 404


async def test_reprocess_document(client, store):
    document_id = (await (await upload(client)).get_json())["document"]["id"]
    await store.set_chunking_config("clinic-a", 30, 5)

    response = await client.post(
        f"/api/rag/documents/{document_id}/reprocess", headers=HEADERS_A
    )

    assert response.status_code == 200
    document = (await response.get_json())["document"]
    assert document["status"] == "completed"
    assert document["processing"]["total_chunks"] > 1


async def test_stats(client):
    await upload(client)

    response = await client.get("/api/rag/stats", headers=HEADERS_A)
    stats = await response.get_json()

    assert stats["total_documents"] == 1
    assert stats["by_status"]["completed"] == 1
    assert stats["by_category"] == {"clinical-protocols": 1}
    assert stats["total_chunks"] == 1


async def test_unknown_route(client):
    response = await client.get("/nope")
    assert response.status_code == 404
    assert (await response.get_json())["error"]["kind"] == "not_found"


def test_status_mapping():
    assert status_for(InvalidParameter("x")) == 400
    assert status_for(DocumentNotFound("x")) == 404
    assert status_for(IngestionFailed("x")) == 422
