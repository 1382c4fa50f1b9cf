from setuptools import setup, find_packages

setup(
    name="fleetguard",
    version="0.1.0",
    packages=find_packages(include=["fleetguard", "fleetguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "starlette",
        "pydantic",
        "pydantic-settings",
        "redis>=5.0.1",
        "psutil",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
