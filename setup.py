from setuptools import find_packages, setup

setup(
    name="swap_oracle",
    version="0.1.0",
    description="HTLC secret custody and order reconciliation for BTC atomic swaps",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "structlog>=23.0.0",
        "httpx>=0.24.0",
        "websockets>=11.0.0",
        "apprise>=1.4.0",
        "aiohttp>=3.8.0",
        "cachetools>=5.3.0",
        "python-bitcoinlib>=0.12.0",
        "ecdsa>=0.18.0",
        "boto3>=1.28.0",
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
            "swap-oracle=swap_oracle.cli:main",
        ],
    },
)
