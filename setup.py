import os

from setuptools import find_packages, setup

with open("README.md", encoding="utf-8") as fh:
    long_description = fh.read()

requirements_path = "requirements.txt"
if os.path.exists(requirements_path):
    with open(requirements_path, encoding="utf-8") as fh:
        requirements = [
            line.strip()
            for line in fh
            if line.strip() and not line.startswith("#") and not line.startswith("-r")
        ]
else:
    requirements = [
        "rich>=13.0.0",
        "psutil>=5.9.0",
        "requests>=2.32.4",
        "PyYAML>=6.0",
        "filelock>=3.12.0",
    ]

setup(
    name="llama-server-deploy",
    version="0.3.0",
    description="Deployment and operations tooling for a GPU-accelerated llama.cpp server",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["llamadeploy", "llamadeploy.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Installation/Setup",
        "Topic :: System :: Systems Administration",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0.0"],
    },
    entry_points={
        "console_scripts": [
            "llama-deploy=llamadeploy.cli:deploy_main",
            "llama-manage=llamadeploy.cli:manage_main",
            "llama-preflight=llamadeploy.cli:preflight_main",
        ],
    },
    include_package_data=True,
)
