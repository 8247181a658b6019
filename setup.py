from setuptools import setup, find_packages

setup(
    name="edgelimit",
    version="0.1.0",
    packages=find_packages(include=["edgelimit", "edgelimit.*"]),
    python_requires=">=3.11",
    install_requires=[
        "redis>=5.0",
        "httpx>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.7",
        "fastapi>=0.110",
        "starlette>=0.36",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
            "fakeredis[lua]>=2.23",
        ],
    },
)
