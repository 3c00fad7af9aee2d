from setuptools import setup, find_packages

setup(
    name="auction-settler",
    version="0.1.0",
    description="Settlement scheduler for on-chain ticket auctions",
    packages=find_packages(exclude=["*.tests", "*.tests.*", "tests"]),
    python_requires=">=3.10",
    install_requires=[
        "web3>=7.0.0",
        "eth-account>=0.13.0",
        "python-dotenv>=1.0.0",
        "aiohttp>=3.9.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "auction-settler=auction_settler.cli:main",
        ],
    },
)
