from setuptools import find_packages, setup

setup(
    name="workload-runner",
    version="0.1.0",
    packages=find_packages(
        include=[
            "wl_common",
            "wl_common.*",
            "wl_persistence",
            "wl_persistence.*",
            "wl_runtime",
            "wl_runtime.*",
            "wl_deployer",
            "wl_deployer.*",
            "wl_orchestrator",
            "wl_orchestrator.*",
            "wl_server",
            "wl_server.*",
            "wl_client",
            "wl_client.*",
            "wl_admin",
            "wl_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "httpx>=0.25.0",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "deploy=wl_deployer.cli:main",
            "wl=wl_client.cli:main",
            "wl-server=wl_server.__main__:main",
            "wl-admin=wl_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
