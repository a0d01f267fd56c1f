from setuptools import setup, find_packages

setup(
    name="bucketguard",
    version="0.1.0",
    packages=find_packages(include=["bucketguard", "bucketguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "redis>=5.0.1",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "fastapi>=0.110",
        "starlette",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx",
            "fakeredis[lua]>=2.20",
        ],
    },
)
