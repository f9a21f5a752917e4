from setuptools import setup, find_packages

setup(
    name="network-monitor",
    version="1.0.0",
    description="Network discovery and SNMP polling service",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "aiohttp>=3.9.0",
        "pydantic>=2.5.0",
        "PyYAML>=6.0",
        "pysnmp>=7.1.0",
        "netifaces>=0.11.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "network-monitor=network_monitor.service:main",
        ]
    },
    python_requires=">=3.11",
)
