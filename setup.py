from pathlib import Path
from setuptools import setup


def read_version(root: Path) -> str:
    """Return ``__version__`` from the package without importing it."""
    for line in (root / "minerboard" / "__init__.py").read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError("unable to find __version__")


ROOT = Path(__file__).parent

setup(
    name="minerboard",
    version=read_version(ROOT),
    description="Republishes an on-chain miner hashrate leaderboard over HTTP",
    packages=["minerboard"],
    python_requires=">=3.11",
    install_requires=[
        "aiohttp>=3.9",
        "orjson>=3.9",
        "pydantic>=2.0",
        "pycryptodome>=3.18",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": ["minerboard=minerboard.__main__:main"],
    },
)
