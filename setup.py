from setuptools import setup, find_packages

setup(
    name="knowledge-memory",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.24",
        "tqdm>=4.60",
        "mcp>=1.2",
    ],
    extras_require={
        # OpenAI embeddings (install separately when needed)
        "openai": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "knowledge-memory=knowledge_memory.kb.cli:main",
        ],
    },
    description="Project knowledge memory with hybrid vector and keyword search.",
)
