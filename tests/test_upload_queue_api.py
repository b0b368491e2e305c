from __future__ import annotations

from io import BytesIO

import pytest

from conftest import PROCESSOR_TEST_KEY, issue_token
from app.errors import ApiError
from app.jobs import UploadJob
from app.settings import WEBHOOK_URL_SETTING
from app.upload_queue import create_upload_queue_service_from_env, set_upload_queue_service

PROCESS_HEADERS = {"x-api-key": PROCESSOR_TEST_KEY}


def _store_resume(service, path: str = "uploads/cv.pdf") -> str:
    service.storage.put_bytes(path, b"%PDF-1.4 resume", content_type="application/pdf")
    return path


def test_healthz_reports_settings_snapshot(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["settings"]["webhook_configured"] is False
    assert resp.headers["x-trace-id"]


def test_process_requires_api_key(client, service):
    service.repository.insert(UploadJob(file_name="cv.pdf", file_path=_store_resume(service)))

    missing = client.post("/api/upload-queue/process")
    wrong = client.post("/api/upload-queue/process", headers={"x-api-key": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["code"] == "AUTH_UNAUTHORIZED"
    queued, _ = service.repository.list_jobs()
    assert queued[0].status == "queued"
    audit = service.audit.repository.list_recent(source="security")
    assert any(x["details"]["headers"].get("x-api-key") == "***REDACTED***" for x in audit)


def test_process_on_empty_queue_still_notifies(client, service):
    service.notifier.reset()

    resp = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS)

    assert resp.status_code == 200
    assert resp.json() == {"message": "No queued jobs"}
    assert service.notifier.events == [("candidate_upload_queue", {"type": "queue_updated"})]


def test_process_end_to_end_with_real_webhook(client, service, webhook_server):
    svc = create_upload_queue_service_from_env()
    set_upload_queue_service(svc)
    svc.settings_repository.set(WEBHOOK_URL_SETTING, webhook_server.url)
    path = _store_resume(svc)
    svc.repository.insert(UploadJob(file_name="cv.pdf", file_path=path, source="bulk_import"))

    first = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS)
    second = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS)

    assert first.status_code == 200
    body = first.json()
    assert body["automation_status"] == 200
    assert body["job"]["status"] == "success"
    assert body["job"]["webhook_response"] == {"status_code": 200, "message": '{"ok": true}'}
    assert webhook_server.received[0]["json"]["inputs"]["filePath"] == path
    assert second.json() == {"message": "No queued jobs"}


def test_process_reports_store_outage_as_500(client, service):
    def _boom():
        raise RuntimeError("connection refused")

    service.repository.claim_next_queued = _boom

    resp = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS)

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "connection refused"
    assert "RuntimeError" in body["stack"]


def test_process_missing_object_finalizes_error_and_returns_500(client, service):
    service.repository.insert(UploadJob(file_name="gone.pdf", file_path="uploads/gone.pdf"))

    resp = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS)

    assert resp.status_code == 500
    assert "uploads/gone.pdf" in resp.json()["error"]
    jobs, _ = service.repository.list_jobs()
    assert jobs[0].status == "error"


def test_blocking_process_requires_session(client):
    resp = client.post(
        "/api/upload-queue/blocking-process",
        json={"file_name": "cv.pdf", "file_path": "uploads/cv.pdf"},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert resp.status_code == 401
    assert resp.json()["code"] == "AUTH_UNAUTHORIZED"


def test_blocking_process_rejects_expired_token(client):
    token = issue_token(minutes=-5)
    resp = client.post(
        "/api/upload-queue/blocking-process",
        json={"file_name": "cv.pdf", "file_path": "uploads/cv.pdf"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "token expired"


def test_blocking_process_requires_file_path(client, service):
    resp = client.post("/api/upload-queue/blocking-process", json={"file_name": "cv.pdf"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "file_path is required"
    assert service.repository.list_jobs()[1] == 0


def test_blocking_process_returns_result_inline(client, service, dispatcher):
    service.settings_repository.set(WEBHOOK_URL_SETTING, "http://automation.test/hook")
    path = _store_resume(service)

    resp = client.post(
        "/api/upload-queue/blocking-process",
        json={
            "file_name": "cv.pdf",
            "file_size": 15,
            "file_path": path,
            "status": "queued",
            "source": "upload_form",
            "webhook_payload": {"inputs": {"candidate_id": "cand_1"}},
        },
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["automation_status"] == 200
    assert body["job"]["status"] == "success"
    assert body["job"]["created_by"] == "user_recruiter"
    assert dispatcher.calls[0][1]["inputs"]["candidate_id"] == "cand_1"


def test_blocking_failure_returns_500_with_job(client, service, dispatcher):
    service.settings_repository.set(WEBHOOK_URL_SETTING, "http://automation.test/hook")
    dispatcher.status_code = 503
    path = _store_resume(service)

    resp = client.post("/api/upload-queue/blocking-process", json={"file_name": "cv.pdf", "file_path": path})

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Webhook responded with status 503"
    assert body["job"]["status"] == "error"


def test_blocking_and_async_rows_are_indistinguishable(client, service, dispatcher):
    service.settings_repository.set(WEBHOOK_URL_SETTING, "http://automation.test/hook")
    path = _store_resume(service)
    blocking = client.post("/api/upload-queue/blocking-process", json={"file_name": "cv.pdf", "file_path": path}).json()
    service.repository.insert(UploadJob(file_name="cv.pdf", file_path=path, created_by="user_recruiter"))
    processed = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS).json()

    ignored = {"id", "upload_date", "updated_at", "completed_date", "source", "webhook_payload"}
    a = {k: v for k, v in blocking["job"].items() if k not in ignored}
    b = {k: v for k, v in processed["job"].items() if k not in ignored}
    assert a == b
    assert blocking["job"]["webhook_payload"]["inputs"].keys() == processed["job"]["webhook_payload"]["inputs"].keys()


def test_management_endpoints_require_session(client):
    resp = client.get("/api/upload-queue", headers={"Authorization": ""})
    assert resp.status_code == 401


def test_enqueue_list_get_and_delete(client, service):
    created = client.post(
        "/api/upload-queue",
        json={"file_name": "cv.pdf", "file_path": "uploads/cv.pdf", "position_title": "QA Lead"},
    )
    assert created.status_code == 201
    job = created.json()
    assert job["status"] == "queued"
    assert job["created_by"] == "user_recruiter"

    listing = client.get("/api/upload-queue?limit=10&offset=0")
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["data"][0]["id"] == job["id"]

    fetched = client.get(f"/api/upload-queue/{job['id']}")
    assert fetched.json()["position_title"] == "QA Lead"

    deleted = client.delete(f"/api/upload-queue/{job['id']}")
    assert deleted.json() == {"success": True}
    assert client.get(f"/api/upload-queue/{job['id']}").status_code == 404
    assert client.delete(f"/api/upload-queue/{job['id']}").status_code == 404


def test_enqueue_requires_file_path(client):
    resp = client.post("/api/upload-queue", json={"file_name": "cv.pdf"})
    assert resp.status_code == 400


def test_patch_cancel_and_retry(client, service):
    job = client.post("/api/upload-queue", json={"file_name": "cv.pdf", "file_path": "uploads/cv.pdf"}).json()
    service.notifier.reset()

    cancelled = client.patch(f"/api/upload-queue/{job['id']}", json={"status": "cancelled"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["completed_date"] is not None

    retried = client.patch(f"/api/upload-queue/{job['id']}", json={"status": "queued"})
    assert retried.json()["status"] == "queued"
    assert retried.json()["completed_date"] is None
    assert len(service.notifier.events) == 2


def test_patch_rejects_invalid_transition_and_empty_body(client, service):
    job = client.post("/api/upload-queue", json={"file_name": "cv.pdf", "file_path": "uploads/cv.pdf"}).json()

    invalid = client.patch(f"/api/upload-queue/{job['id']}", json={"status": "inprogress"})
    assert invalid.status_code == 409
    assert invalid.json()["code"] == "UPLOAD_QUEUE_TRANSITION_INVALID"

    empty = client.patch(f"/api/upload-queue/{job['id']}", json={})
    assert empty.status_code == 400
    assert empty.json()["error"] == "No fields to update"

    unknown = client.patch("/api/upload-queue/missing", json={"file_name": "x.pdf"})
    assert unknown.status_code == 404

    extra = client.patch(f"/api/upload-queue/{job['id']}", json={"upload_date": "2020-01-01"})
    assert extra.status_code == 400
    assert extra.json()["code"] == "REQ_VALIDATION_FAILED"


def test_upload_file_stores_bytes(client, service):
    resp = client.post(
        "/api/upload-queue/upload-file",
        files={"file": ("Jane Doe.pdf", BytesIO(b"%PDF-1.4 jane"), "application/pdf")},
    )

    assert resp.status_code == 200
    file_path = resp.json()["file_path"]
    assert file_path.startswith("uploads/")
    assert file_path.endswith(".pdf")
    assert service.storage.get_bytes(file_path) == b"%PDF-1.4 jane"


def test_unknown_route_renders_error_shape(client):
    resp = client.get("/api/unknown")
    assert resp.status_code == 404
    assert resp.json() == {"error": "resource not found", "code": "REQ_NOT_FOUND"}


def test_patch_cannot_write_error_columns(client, service):
    job = client.post("/api/upload-queue", json={"file_name": "cv.pdf", "file_path": "uploads/cv.pdf"}).json()

    resp = client.patch(f"/api/upload-queue/{job['id']}", json={"error": "boom", "error_details": "x"})

    assert resp.status_code == 400
    stored = service.repository.get_by_id(job["id"])
    assert stored.status == "queued"
    assert stored.error is None
    assert stored.error_details is None
    with pytest.raises(ApiError) as exc:
        service.update(job["id"], fields={"error": "boom"}, actor_id="user_ops")
    assert exc.value.http_status == 400
    assert exc.value.code == "UPLOAD_QUEUE_UPDATE_INVALID"


def test_patch_rejects_null_for_required_fields(client, service):
    path = _store_resume(service)
    job = client.post("/api/upload-queue", json={"file_name": "cv.pdf", "file_path": path}).json()

    null_name = client.patch(f"/api/upload-queue/{job['id']}", json={"file_name": None})
    null_status = client.patch(f"/api/upload-queue/{job['id']}", json={"status": None})

    assert null_name.status_code == 400
    assert null_name.json()["error"] == "fields must not be null: file_name"
    assert null_status.status_code == 400
    processed = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS)
    assert processed.status_code == 200
    assert processed.json()["job"]["file_name"] == "cv.pdf"
    assert processed.json()["job"]["status"] == "success"


def test_retried_blocking_job_keeps_caller_inputs(client, service, dispatcher):
    service.settings_repository.set(WEBHOOK_URL_SETTING, "http://automation.test/hook")
    dispatcher.status_code = 503
    path = _store_resume(service)
    failed = client.post(
        "/api/upload-queue/blocking-process",
        json={"file_name": "cv.pdf", "file_path": path, "webhook_payload": {"inputs": {"candidate_id": "cand_1"}}},
    )
    job_id = failed.json()["job"]["id"]

    retried = client.patch(f"/api/upload-queue/{job_id}", json={"status": "queued"})
    assert retried.json()["webhook_payload"] == {"inputs": {"candidate_id": "cand_1"}}

    dispatcher.status_code = 200
    processed = client.post("/api/upload-queue/process", headers=PROCESS_HEADERS)

    assert processed.json()["job"]["status"] == "success"
    first, second = dispatcher.calls[0][1], dispatcher.calls[1][1]
    assert second["inputs"]["candidate_id"] == "cand_1"
    assert first["inputs"].keys() == second["inputs"].keys()


def test_audit_logs_endpoint_lists_recent_records(client):
    client.post("/api/upload-queue", json={"file_name": "cv.pdf", "file_path": "uploads/cv.pdf"})

    resp = client.get("/api/upload-queue/audit-logs?source=upload_queue&limit=5")

    assert resp.status_code == 200
    assert any(x["message"] == "upload enqueued" for x in resp.json()["data"])
