"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="canvas-chat",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "pydantic>=2",
        "pydantic-settings",
        "structlog",
        "google-generativeai",
        "json-repair",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
