import setuptools
from setuptools import find_packages

with open("readme.md", "r") as fh:
    long_description = fh.read()


vars2find = ["__author__", "__version__", "__url__"]
vars2readme = {}
with open("./aviary/__init__.py") as f:
    for line in f.readlines():
        for v in vars2find:
            if line.startswith(v):
                line = line.replace(" ", "").replace('"', "").replace("'", "").strip()
                vars2readme[v] = line.split("=")[1]

core_deps = [
    "fastapi>=0.110.0",
    "uvicorn[standard]",
    "python-multipart",
    "pydantic>=2.0",
    "pydantic-settings>=2.0",
    "sqlalchemy[asyncio]>=2.0",
    "aiosqlite",
    "aioboto3",
    "tenacity",
]

setuptools.setup(
    name="aviary-backup",
    url=vars2readme["__url__"],
    version=vars2readme["__version__"],
    author=vars2readme["__author__"],
    description="Backup and restore pipeline for the Aviary document service",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["aviary", "aviary.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=core_deps,
    extras_require={
        "postgres": ["asyncpg"],
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
        "all": [
            "asyncpg",
        ],
    },
)
