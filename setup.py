"""Setup script for resellhub."""

from setuptools import setup, find_packages

setup(
    name="resellhub",
    version="1.0.0",
    description=(
        "External reconciliation layer for a digital goods reseller: payment webhooks, "
        "wallet ledger, provider clients and catalog sync"
    ),
    python_requires=">=3.10",
    packages=find_packages(include=["resellhub", "resellhub.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "resellhub-api=resellhub.api.main:run",
            "resellhub-catalog-worker=resellhub.workers.catalog_sync_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
