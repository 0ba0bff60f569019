"""
Exam Paper Extractor
====================
Turns scanned IELTS-style exam papers (PDF) into structured question JSON.

Architecture:
    - Rasterizer: Renders PDF pages to PNG images
    - OCR Gateway: docTR (remote) with Tesseract (local) fallback
    - Structured Extractor: LLM call + JSON repair with bounded retries
    - Post-Processing Pipeline: Eight deterministic repair/validation stages
    - Image Processor: Map/diagram detection, cropping and injection

Version: 1.0.0
"""

__version__ = "1.0.0"
