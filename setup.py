import os
from setuptools import setup, find_packages

# Read the version from the package
with open(os.path.join("src", "fleet_ssh_tools", "__init__.py"), "r") as f:
    for line in f:
        if line.startswith("__version__"):
            exec(line)
            break

# Read long description from README
with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="fleet_ssh_tools",
    version=__version__,
    description="SSH remote execution, connection diagnostics and metrics collection for server fleets",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "paramiko>=3.0.0",
        "typeguard>=4.0.0",
        "tqdm>=4.65.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Monitoring",
        "Topic :: System :: Systems Administration",
    ],
    entry_points={
        "console_scripts": [
            "fleet-ssh=fleet_ssh_tools.cli:main",
        ],
    },
)
