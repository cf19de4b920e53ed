"""
ChunkedTranscriber: setuptools build script.

Usage:
    # Development install:
    pip install -e .

    # Run the tests:
    python -m unittest discover tests
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "chunked-transcriber"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Chunked audio transcription pipeline with rate-limit aware retries",
    packages=find_namespace_packages(include=["transcriber", "transcriber.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "chunked-transcriber = main:main",
        ],
    },
)
