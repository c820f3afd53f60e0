#!/usr/bin/env python3
from setuptools import setup
import re
import datetime

# Update build time in bookflow.py
def update_build_time():
    build_time = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    with open("bookflow.py", "r") as f:
        content = f.read()

    pattern = r'__build_time__ = "[^"]*"'
    replacement = f'__build_time__ = "{build_time}"'
    new_content = re.sub(pattern, replacement, content)

    with open("bookflow.py", "w") as f:
        f.write(new_content)

    print(f"Updated build time to: {build_time}")

# Update build time before building
update_build_time()

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="bookflow",
    version="0.1.0",
    author="bookflow contributors",
    author_email="",
    description="Reflowable text layout for e-book chapters: wrapping, links, anchors and read-aloud chunks",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["bookflow"],
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Environment :: Console",
        "Topic :: Text Processing :: Markup :: HTML",
        "Topic :: Utilities",
        "Development Status :: 3 - Alpha",
    ],
    python_requires=">=3.8",
    install_requires=[
        "beautifulsoup4>=4.9.0",
        "Pillow>=9.0.0",
        "pygments>=2.10.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "bookflow=bookflow:main",
        ],
    },
)
