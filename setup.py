from setuptools import setup, find_packages

setup(
    name="tatlimit",
    version="0.1.0",
    packages=find_packages(include=["tatlimit", "tatlimit.*"]),
    python_requires=">=3.11",
    install_requires=[
        "redis>=5.0",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "fastapi>=0.110",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "fakeredis[lua]>=2.20",
            "httpx>=0.27",
        ],
    },
)
