"""Setup configuration for the Loki Discord bot."""

from setuptools import setup, find_packages

setup(
    name="loki",
    version="0.1.0",
    description="A Discord bot running per-guild meme contests, nickname lotteries and timeout statistics",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "py-cord>=2.6",
        "aiosqlite>=0.20",
        "aiohttp>=3.9",
        "PyYAML>=6.0",
        "python-dotenv>=1.0",
        "prompt_toolkit>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "loki=loki.main:main",
        ],
    },
)
