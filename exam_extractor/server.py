"""
HTTP Microservice
=================
Flask-based HTTP API around the extraction engine.

The admin frontend uploads a section PDF, receives the validated
document, lets an editor review it, and persists it on its own side.

Endpoints:
    GET    /api/health              → Health check
    GET    /api/ocr/status          → OCR backend status
    POST   /api/extract/<section>   → Extract a Listening/Reading/Writing PDF
    POST   /api/writing/evaluate    → Score a Writing answer
    GET    /uploads/<filename>      → Stored page and inline images
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.utils import secure_filename

from . import __version__
from .engine import ExtractionEngine, ExtractorConfig
from .evaluation import WritingEvaluator
from .models import Section

logger = logging.getLogger(__name__)


def create_app(
    engine: Optional[ExtractionEngine] = None,
    evaluator: Optional[WritingEvaluator] = None,
    config: Optional[dict] = None,
) -> Flask:
    """
    Create and configure the Flask app.

    Args:
        engine: Extraction engine; built from the environment if omitted.
        evaluator: Writing evaluator; derived from the engine if omitted.
        config: Extra Flask config values.
    """
    app = Flask(__name__)
    CORS(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 100 * 1024 * 1024)  # 100MB
    if config:
        app.config.update(config)

    engine = engine or ExtractionEngine.from_config(ExtractorConfig.from_env())
    evaluator = evaluator or engine.create_evaluator()

    # ─── Health Check ─────────────────────────────────────────────────────

    @app.route("/api/health", methods=["GET"])
    def health():
        return jsonify({
            "status": "healthy",
            "service": "exam-extractor",
            "version": __version__,
        })

    @app.route("/api/ocr/status", methods=["GET"])
    def ocr_status():
        """Primary/fallback OCR configuration and backend reachability."""
        try:
            status = engine.ocr_gateway.get_service_status()
            return jsonify({"success": True, **status.model_dump()})
        except Exception as e:
            logger.error(f"OCR status check failed: {e}")
            return jsonify({"success": False, "error": str(e)}), 500

    # ─── Extraction ───────────────────────────────────────────────────────

    @app.route("/api/extract/<section>", methods=["POST"])
    def extract_section(section: str):
        """
        Extract one section PDF synchronously.

        Form fields:
            file:   The PDF (required)
            testId: Prefix for stored image names (optional)
        """
        try:
            section_enum = Section.parse(section)
        except ValueError:
            return jsonify({
                "success": False,
                "error": f"Unknown section: {section}",
            }), 400

        file = request.files.get("file")
        if file is None:
            return jsonify({"success": False, "error": "No PDF file uploaded"}), 400
        if not file.filename:
            return jsonify({"success": False, "error": "No file selected"}), 400

        test_id = secure_filename(request.form.get("testId", "")) or None
        upload_dir = engine.storage.make_temp_dir("upload")
        pdf_path = upload_dir / (secure_filename(file.filename) or "upload.pdf")

        try:
            file.save(str(pdf_path))
            logger.info(f"Received {section_enum.value} PDF: {file.filename}")
            result = engine.process_pdf(str(pdf_path), section_enum, test_id=test_id)
        except Exception as e:
            logger.error(f"{section_enum.value} extraction error: {e}")
            return jsonify({"success": False, "error": str(e)}), 500
        finally:
            engine.storage.remove_dir(upload_dir)

        status_code = 200 if result.success else 500
        return jsonify(result.to_response()), status_code

    # ─── Writing Evaluation ───────────────────────────────────────────────

    @app.route("/api/writing/evaluate", methods=["POST"])
    def evaluate_writing():
        """JSON body: {"text": str, "taskType": "task1" | "task2"}."""
        data = request.get_json(silent=True) or {}
        text = data.get("text")
        if not isinstance(text, str) or not text.strip():
            return jsonify({"success": False, "error": "Missing text"}), 400

        try:
            evaluation = evaluator.evaluate(text, data.get("taskType") or "task2")
        except Exception as e:
            logger.error(f"Writing evaluate error: {e}")
            return jsonify({"success": False, "error": str(e) or "Server error"}), 500

        return jsonify({
            "success": True,
            "evaluation": evaluation.model_dump(by_alias=True),
        })

    # ─── Static Images ────────────────────────────────────────────────────

    @app.route("/uploads/<path:filename>")
    def serve_uploads(filename):
        """Serve stored images from the uploads directory."""
        return send_from_directory(str(engine.storage.uploads_dir), filename)

    return app


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 3001,
    debug: bool = False,
    engine: Optional[ExtractionEngine] = None,
):
    """Start the microservice server."""
    app = create_app(engine=engine)
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    run_server(debug=True)
