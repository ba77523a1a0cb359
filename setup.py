"""
Packaging for syncdesk.

    pip install -e .            # editable install
    pip install -e ".[test]"    # plus pytest and httpx for the test suite
    syncdesk-api                # serve the HTTP layer on :8000
"""
import os

from setuptools import find_packages, setup

HERE = os.path.dirname(os.path.abspath(__file__))


def read_requirements(filename="requirements.txt"):
    """Runtime dependencies, one specifier per line; blank lines and comments ignored."""
    with open(os.path.join(HERE, filename), encoding="utf-8") as f:
        lines = (line.strip() for line in f)
        return [line for line in lines if line and not line.startswith("#")]


setup(
    name="syncdesk",
    version="1.0.0",
    description="Google credential lifecycle, inbox/calendar sync and free-text scheduling core",
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=read_requirements(),
    extras_require={
        "test": ["pytest>=7.4", "httpx>=0.25"],
    },
    entry_points={
        "console_scripts": [
            "syncdesk-api=syncdesk.api.service:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3",
        "Topic :: Communications :: Email",
        "Topic :: Office/Business :: Scheduling",
    ],
    zip_safe=False,
)
