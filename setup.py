"""
setup.py for face-attendance.

Needed because the source tree does not follow the standard layout:
  - face_attendance lives under backend/src/face_attendance/
"""

from setuptools import setup

setup(
    name="face-attendance",
    version="0.1.0",
    description="Offline-first face matching, enrollment and attendance sync",
    python_requires=">=3.10",
    package_dir={
        "face_attendance": "backend/src/face_attendance",
    },
    packages=[
        "face_attendance",
        "face_attendance.cli",
        "face_attendance.matching",
        "face_attendance.storage",
        "face_attendance.sync",
    ],
    install_requires=[
        "numpy>=1.21",
        "SQLAlchemy>=1.4",
        "Pillow>=9.0",
        "click>=8.0",
        "httpx>=0.24",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "face-attendance=face_attendance.cli.main:cli",
        ],
    },
)
