"""
HTTP Microservice
=================
Flask-based HTTP API for the package import pipeline.

Endpoints:
    GET    /api/health                          → Health check
    POST   /api/imports                         → Upload a document (202 + job id)
    GET    /api/imports                         → List import jobs
    GET    /api/imports/<job_id>                → Job status
    POST   /api/imports/<job_id>/cancel         → Cancel a job
    GET    /api/packages                        → List packages
    GET    /api/packages/<id>                   → Package tree
    DELETE /api/packages/<id>                   → Delete a package
    GET    /api/packages/<id>/report            → Review report
    POST   /api/packages/<id>/tours             → Add a tour
    PUT    /api/packages/<id>/numbering-mode    → Set numbering mode
    POST   /api/packages/<id>/renumber          → Renumber
    DELETE /api/tours/<id>                      → Delete a tour
    POST   /api/tours/<id>/move                 → Move a tour
    POST   /api/tours/<id>/warmup               → Set/unset warm-up
    POST   /api/tours/<id>/questions            → Add a question
    DELETE /api/questions/<id>                  → Delete a question
    POST   /api/questions/<id>/move             → Move a question
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify, request
from flask_cors import CORS

from . import __version__
from . import crud
from . import database as db
from . import storage as fs_storage
from .engine import ImportConfig
from .errors import PackageImportError
from .models import JobStatus, NumberingMode

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)


def create_app(config: dict = None) -> Flask:
    """
    Create and configure the Flask app.

    Recognized config keys:
        IMPORT_CONFIG: ImportConfig (default: from PACKPARSER_* env vars)
        START_SCHEDULER: start the background import scheduler (default True)
    """
    from .scheduler import ImportScheduler

    if config:
        app.config.update(config)

    app.config.setdefault("IMPORT_CONFIG", ImportConfig.from_env())
    app.config.setdefault("START_SCHEDULER", True)
    import_config: ImportConfig = app.config["IMPORT_CONFIG"]
    app.config["MAX_CONTENT_LENGTH"] = import_config.max_file_size_bytes + 1024 * 1024

    # Initialize persistence layer
    fs_storage.init_storage(import_config.data_dir)
    db.init_db(import_config.db_path)

    previous = app.extensions.get("import_scheduler")
    if previous is not None:
        previous.stop()
    scheduler = ImportScheduler(config=import_config)
    app.extensions["import_scheduler"] = scheduler
    if app.config["START_SCHEDULER"]:
        scheduler.start()

    return app


def _config() -> ImportConfig:
    return app.config["IMPORT_CONFIG"]


def _scheduler():
    return app.extensions["import_scheduler"]


def _db_path() -> str:
    return _config().db_path


# ─── Error Handling ──────────────────────────────────────────────────────────


@app.errorhandler(PackageImportError)
def handle_import_error(error: PackageImportError):
    return jsonify({"error": error.to_dict()}), 400


@app.errorhandler(LookupError)
def handle_lookup_error(error: LookupError):
    return jsonify({"error": {"kind": "not_found", "message": str(error)}}), 404


@app.errorhandler(IndexError)
def handle_position_error(error: IndexError):
    return jsonify({"error": {"kind": "bad_request", "message": str(error)}}), 400


@app.errorhandler(413)
def handle_too_large(error):
    limit = _config().max_file_size_bytes / 1024 / 1024
    return jsonify({"error": {
        "kind": "too_large",
        "message": f"The upload exceeds the {limit:.0f} MB limit",
        "hint": "Split the package or compress embedded images.",
    }}), 413


def _bad_request(message: str):
    return jsonify({"error": {"kind": "bad_request", "message": message}}), 400


def _not_found(what: str):
    return jsonify({"error": {"kind": "not_found", "message": f"{what} not found"}}), 404


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    scheduler = _scheduler()
    running = db.list_jobs(status=JobStatus.RUNNING.value, db_path=_db_path())
    return jsonify({
        "status": "healthy",
        "service": "packparser",
        "version": __version__,
        "running_jobs": len(running),
        "queued_jobs": scheduler.queued_count,
        "normalizer_enabled": bool(_config().normalizer_url),
    })


# ─── Imports ─────────────────────────────────────────────────────────────────


@app.route("/api/imports", methods=["POST"])
def create_import():
    """
    Upload a document (multipart/form-data, field ``file``).
    Returns 202 with the job id; poll /api/imports/<job_id>.
    """
    if "file" not in request.files:
        return _bad_request("No file provided")
    file = request.files["file"]
    if not file.filename:
        return _bad_request("No file selected")

    job = crud.create_import_job(
        file,
        file.filename,
        owner_id=request.form.get("owner_id", ""),
        config=_config(),
        scheduler=_scheduler(),
    )
    return jsonify({"job_id": job.id, "status": job.status.value}), 202


@app.route("/api/imports", methods=["GET"])
def list_imports():
    return jsonify({"jobs": crud.list_job_statuses(
        status=request.args.get("status"),
        owner_id=request.args.get("owner_id"),
        limit=request.args.get("limit", 100, type=int),
        db_path=_db_path(),
    )})


@app.route("/api/imports/<job_id>", methods=["GET"])
def get_import(job_id: str):
    view = crud.get_job_status(job_id, db_path=_db_path())
    if view is None:
        return _not_found("Job")
    return jsonify(view)


@app.route("/api/imports/<job_id>/cancel", methods=["POST"])
def cancel_import(job_id: str):
    if crud.get_job_status(job_id, db_path=_db_path()) is None:
        return _not_found("Job")
    if not _scheduler().cancel(job_id):
        return jsonify({"error": {
            "kind": "conflict", "message": "Job can no longer be cancelled",
        }}), 409
    return jsonify(crud.get_job_status(job_id, db_path=_db_path()))


# ─── Packages ────────────────────────────────────────────────────────────────


@app.route("/api/packages", methods=["GET"])
def list_packages():
    return jsonify({"packages": crud.list_packages(db_path=_db_path())})


@app.route("/api/packages/<int:package_id>", methods=["GET"])
def get_package(package_id: int):
    package = crud.get_package(package_id, db_path=_db_path())
    if package is None:
        return _not_found("Package")
    return jsonify(package)


@app.route("/api/packages/<int:package_id>", methods=["DELETE"])
def delete_package(package_id: int):
    if not crud.delete_package(package_id, db_path=_db_path(),
                               data_dir=_config().data_dir):
        return _not_found("Package")
    return jsonify({"success": True})


@app.route("/api/packages/<int:package_id>/report", methods=["GET"])
def package_report(package_id: int):
    report = crud.get_package_report(package_id, db_path=_db_path())
    if report is None:
        return _not_found("Package")
    return jsonify(report.model_dump(mode="json"))


@app.route("/api/packages/<int:package_id>/tours", methods=["POST"])
def add_tour(package_id: int):
    data = request.get_json(silent=True) or {}
    tour = crud.add_tour(
        package_id,
        position=data.get("position"),
        is_warmup=bool(data.get("is_warmup", False)),
        preamble=data.get("preamble", ""),
        db_path=_db_path(),
    )
    if tour is None:
        return _not_found("Package")
    return jsonify(tour), 201


@app.route("/api/packages/<int:package_id>/numbering-mode", methods=["PUT"])
def set_numbering_mode(package_id: int):
    data = request.get_json(silent=True) or {}
    try:
        mode = NumberingMode(data.get("mode"))
    except ValueError:
        return _bad_request(
            f"mode must be one of: {', '.join(m.value for m in NumberingMode)}"
        )
    package = crud.set_numbering_mode(package_id, mode, db_path=_db_path())
    if package is None:
        return _not_found("Package")
    return jsonify(package)


@app.route("/api/packages/<int:package_id>/renumber", methods=["POST"])
def renumber_package(package_id: int):
    package = crud.renumber_package(package_id, db_path=_db_path())
    if package is None:
        return _not_found("Package")
    return jsonify(package)


# ─── Tours ───────────────────────────────────────────────────────────────────


@app.route("/api/tours/<int:tour_id>", methods=["DELETE"])
def delete_tour(tour_id: int):
    if not crud.delete_tour(tour_id, db_path=_db_path()):
        return _not_found("Tour")
    return jsonify({"success": True})


@app.route("/api/tours/<int:tour_id>/move", methods=["POST"])
def move_tour(tour_id: int):
    data = request.get_json(silent=True) or {}
    position = data.get("position")
    if not isinstance(position, int):
        return _bad_request("position (integer) is required")
    if not crud.move_tour(tour_id, position, db_path=_db_path()):
        return _not_found("Tour")
    return jsonify({"success": True})


@app.route("/api/tours/<int:tour_id>/warmup", methods=["POST"])
def set_warmup(tour_id: int):
    data = request.get_json(silent=True) or {}
    if not crud.set_warmup(tour_id, bool(data.get("is_warmup", True)),
                           db_path=_db_path()):
        return _not_found("Tour")
    return jsonify({"success": True})


@app.route("/api/tours/<int:tour_id>/questions", methods=["POST"])
def add_question(tour_id: int):
    data = request.get_json(silent=True) or {}
    position = data.pop("position", None)
    block_id = data.pop("block_id", None)
    question = crud.add_question(
        tour_id, position=position, block_id=block_id,
        db_path=_db_path(), **data,
    )
    if question is None:
        return _not_found("Tour")
    return jsonify(question), 201


# ─── Questions ───────────────────────────────────────────────────────────────


@app.route("/api/questions/<int:question_id>", methods=["DELETE"])
def delete_question(question_id: int):
    if not crud.delete_question(question_id, db_path=_db_path()):
        return _not_found("Question")
    return jsonify({"success": True})


@app.route("/api/questions/<int:question_id>/move", methods=["POST"])
def move_question(question_id: int):
    data = request.get_json(silent=True) or {}
    to_tour_id = data.get("tour_id")
    position = data.get("position")
    if not isinstance(to_tour_id, int) or not isinstance(position, int):
        return _bad_request("tour_id and position (integers) are required")
    if not crud.move_question(question_id, to_tour_id, position,
                              to_block_id=data.get("block_id"),
                              db_path=_db_path()):
        return _not_found("Question")
    return jsonify({"success": True})


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
):
    """Start the microservice server."""
    create_app()
    app.run(host=host, port=port, debug=debug, use_reloader=False)


if __name__ == "__main__":
    run_server(debug=True)
