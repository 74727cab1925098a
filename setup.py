from setuptools import find_packages, setup

setup(
    name="htlc_resolver",
    version="1.0.0",
    description="Cross-chain HTLC atomic swap resolver (account chain to UTXO chain)",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "structlog>=23.0.0",
        "httpx>=0.24.0",
        "apprise>=1.4.0",
        "aiohttp>=3.8.0",
        "cachetools>=5.3.0",
        "python-bitcoinlib>=0.12.0",
        "eth-utils>=2.0.0",
        "eth-hash[pycryptodome]>=0.5.0",
        "aiosqlite>=0.19.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "click>=8.1.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.11.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "htlc-resolver=htlc_resolver.cli:main",
        ],
    },
)
