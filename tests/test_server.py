"""
Test Suite for the HTTP API
===========================
Flask test client against a throwaway database; the background
scheduler is not started so uploaded jobs stay Queued.
"""

from __future__ import annotations

import io

import pytest

from packparser import database as db
from packparser.models import DraftPackage, DraftQuestion, DraftTour
from packparser.server import create_app


@pytest.fixture
def client(config):
    app = create_app({"IMPORT_CONFIG": config, "START_SCHEDULER": False})
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def package_id(config) -> int:
    package = DraftPackage(
        title="Кубок",
        tours=[
            DraftTour(number="1", questions=[
                DraftQuestion(number="1", text="Q1", answer="A", order_index=0),
                DraftQuestion(number="2", text="Q2", answer="B", order_index=1),
            ]),
            DraftTour(number="2", order_index=1, questions=[
                DraftQuestion(number="3", text="Q3", answer="C"),
            ]),
        ],
    )
    return db.insert_package_tree(package, db_path=config.db_path)


def upload(client, name: str = "package.docx", content: bytes = b"PK data",
           owner_id: str = "u1"):
    return client.post(
        "/api/imports",
        data={"file": (io.BytesIO(content), name), "owner_id": owner_id},
        content_type="multipart/form-data",
    )


def question_numbers(package: dict) -> list[list[str]]:
    return [[q["number"] for q in tour["questions"]] for tour in package["tours"]]


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH + IMPORTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestImports:
    """Test the upload and job status endpoints."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["running_jobs"] == 0
        assert data["normalizer_enabled"] is False

    def test_upload_returns_queued_job(self, client):
        response = upload(client)
        assert response.status_code == 202
        job_id = response.get_json()["job_id"]
        assert response.get_json()["status"] == "queued"

        status = client.get(f"/api/imports/{job_id}").get_json()
        assert status["status"] == "queued"
        assert status["file_name"] == "package.docx"
        assert status["attempts"] == 0

    def test_upload_without_file(self, client):
        response = client.post("/api/imports", data={},
                               content_type="multipart/form-data")
        assert response.status_code == 400

    def test_unsupported_format(self, client):
        response = upload(client, name="notes.txt")
        assert response.status_code == 400
        error = response.get_json()["error"]
        assert error["kind"] == "unsupported_format"
        assert error["hint"]

    def test_too_large_after_saving(self, client, config):
        config.max_file_size_bytes = 4
        response = upload(client, content=b"0123456789")
        assert response.status_code == 400
        assert response.get_json()["error"]["kind"] == "too_large"
        assert client.get("/api/imports").get_json()["jobs"] == []

    def test_request_body_over_limit(self, client, config):
        config.max_file_size_bytes = 1024
        create_app({"IMPORT_CONFIG": config, "START_SCHEDULER": False})
        response = upload(client, content=b"0" * (2 * 1024 * 1024))
        assert response.status_code == 413
        assert response.get_json()["error"]["kind"] == "too_large"

    def test_list_filters_by_owner(self, client):
        upload(client, owner_id="u1")
        upload(client, owner_id="u2")

        jobs = client.get("/api/imports?owner_id=u2").get_json()["jobs"]
        assert len(jobs) == 1
        assert len(client.get("/api/imports").get_json()["jobs"]) == 2

    def test_unknown_job(self, client):
        assert client.get("/api/imports/missing").status_code == 404
        assert client.post("/api/imports/missing/cancel").status_code == 404

    def test_cancel_queued_job(self, client):
        job_id = upload(client).get_json()["job_id"]

        response = client.post(f"/api/imports/{job_id}/cancel")
        assert response.status_code == 200
        assert response.get_json()["status"] == "cancelled"
        assert client.post(f"/api/imports/{job_id}/cancel").status_code == 409


# ═══════════════════════════════════════════════════════════════════════════════
# PACKAGES + EDITS
# ═══════════════════════════════════════════════════════════════════════════════


class TestPackages:
    """Test package reads and structural edit endpoints."""

    def test_list_and_get(self, client, package_id):
        [row] = client.get("/api/packages").get_json()["packages"]
        assert row["total_questions"] == 3

        package = client.get(f"/api/packages/{package_id}").get_json()
        assert package["title"] == "Кубок"
        assert question_numbers(package) == [["1", "2"], ["3"]]

    def test_missing_package(self, client):
        assert client.get("/api/packages/999").status_code == 404
        assert client.get("/api/packages/999/report").status_code == 404
        assert client.post("/api/packages/999/renumber").status_code == 404

    def test_report(self, client, package_id):
        report = client.get(f"/api/packages/{package_id}/report").get_json()
        assert report["total_questions"] == 3
        assert report["success_rate"] == 100.0

    def test_delete(self, client, package_id):
        assert client.delete(f"/api/packages/{package_id}").status_code == 200
        assert client.get(f"/api/packages/{package_id}").status_code == 404
        assert client.delete(f"/api/packages/{package_id}").status_code == 404

    def test_add_tour_and_question(self, client, package_id):
        response = client.post(f"/api/packages/{package_id}/tours", json={"position": 0})
        assert response.status_code == 201
        tour = response.get_json()

        response = client.post(f"/api/tours/{tour['id']}/questions",
                               json={"text": "Нове", "answer": "так"})
        assert response.status_code == 201
        assert response.get_json()["number"] == "1"

        package = client.get(f"/api/packages/{package_id}").get_json()
        assert question_numbers(package) == [["1"], ["2", "3"], ["4"]]

    def test_numbering_mode(self, client, package_id):
        response = client.put(f"/api/packages/{package_id}/numbering-mode",
                              json={"mode": "per_tour"})
        assert response.status_code == 200
        assert question_numbers(response.get_json()) == [["1", "2"], ["1"]]

        response = client.put(f"/api/packages/{package_id}/numbering-mode",
                              json={"mode": "alphabetical"})
        assert response.status_code == 400

    def test_move_tour(self, client, package_id):
        package = client.get(f"/api/packages/{package_id}").get_json()
        second = package["tours"][1]["id"]

        assert client.post(f"/api/tours/{second}/move", json={}).status_code == 400
        assert client.post(f"/api/tours/{second}/move",
                           json={"position": 0}).status_code == 200
        package = client.get(f"/api/packages/{package_id}").get_json()
        assert [t["id"] for t in package["tours"]][0] == second
        assert question_numbers(package) == [["1"], ["2", "3"]]

    def test_warmup(self, client, package_id):
        package = client.get(f"/api/packages/{package_id}").get_json()
        second = package["tours"][1]["id"]

        assert client.post(f"/api/tours/{second}/warmup",
                           json={"is_warmup": True}).status_code == 200
        package = client.get(f"/api/packages/{package_id}").get_json()
        assert package["tours"][0]["is_warmup"] is True
        assert [t["number"] for t in package["tours"]] == ["0", "1"]

    def test_move_and_delete_question(self, client, package_id):
        package = client.get(f"/api/packages/{package_id}").get_json()
        first_tour, second_tour = (t["id"] for t in package["tours"])
        q1 = package["tours"][0]["questions"][0]["id"]

        response = client.post(f"/api/questions/{q1}/move",
                               json={"tour_id": second_tour, "position": 5})
        assert response.status_code == 200
        package = client.get(f"/api/packages/{package_id}").get_json()
        assert [q["text"] for q in package["tours"][1]["questions"]] == ["Q3", "Q1"]
        assert question_numbers(package) == [["1"], ["2", "3"]]

        assert client.delete(f"/api/questions/{q1}").status_code == 200
        assert client.delete(f"/api/questions/{q1}").status_code == 404
        assert client.delete(f"/api/tours/{first_tour}").status_code == 200
        package = client.get(f"/api/packages/{package_id}").get_json()
        assert question_numbers(package) == [["1"]]

    def test_move_question_to_foreign_tour(self, client, package_id, config):
        other = db.insert_package_tree(
            DraftPackage(tours=[DraftTour(number="1")]), db_path=config.db_path
        )
        foreign_tour = db.load_package_tree(other, db_path=config.db_path).tours[0].id
        package = client.get(f"/api/packages/{package_id}").get_json()
        question = package["tours"][0]["questions"][0]["id"]

        response = client.post(f"/api/questions/{question}/move",
                               json={"tour_id": foreign_tour, "position": 0})
        assert response.status_code == 404
        assert response.get_json()["error"]["kind"] == "not_found"

    def test_move_question_requires_fields(self, client, package_id):
        assert client.post("/api/questions/1/move", json={"tour_id": 1}).status_code == 400


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
