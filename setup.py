"""Setup configuration for the Lead Discovery Pipeline."""

from setuptools import setup

setup(
    name="lead_discovery_pipeline",
    version="1.0.0",
    description="Lead Discovery Pipeline - quota-guaranteed lead search with enrichment and AI analysis",
    py_modules=["lead_pipeline", "job_client", "ai_oracle", "log_capture"],
    python_requires=">=3.9",
    install_requires=[
        "aiohttp>=3.9.0",
        "openai>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-timeout>=2.2.0",
        ],
    },
)
