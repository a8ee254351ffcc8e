"""Setup configuration for sonarsync"""

from setuptools import setup, find_packages

setup(
    name="sonar-branch-sync",
    version="0.1.0",
    description=(
        "CI tool that scans unanalysed commits of Gitea branches and pull "
        "requests with sonar-scanner and keeps per-branch SonarQube projects in sync."
    ),
    author="Sonar Branch Sync Contributors",
    author_email="",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "black>=22.0",
            "flake8>=4.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "sonar-branch-sync=sonarsync.main:main",
        ],
    },
)
