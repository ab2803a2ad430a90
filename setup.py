from pathlib import Path
from setuptools import find_packages, setup


ROOT = Path(__file__).parent


def read_version(root: Path) -> str:
    """Return ``__version__`` from the package without importing it."""
    for line in (root / "alphfolio" / "__init__.py").read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    return "0.0.0"


setup(
    name="alphfolio",
    version=read_version(ROOT),
    description="Token price resolution and multi-wallet portfolio valuation",
    packages=find_packages(include=["alphfolio", "alphfolio.*"]),
    python_requires=">=3.11",
    install_requires=[
        "aiohttp>=3.9",
        "cachetools>=5.3",
        "orjson>=3.9",
        "pydantic>=2",
    ],
    extras_require={
        "test": ["pytest", "pytest-asyncio"],
    },
)
