"""
Module entry point for: python -m exam_extractor

Allows running the extractor directly as a module:
    python -m exam_extractor extract <pdf_path> --section listening
    python -m exam_extractor status
    python -m exam_extractor serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
