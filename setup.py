#!/usr/bin/env python3
"""
Setup configuration for lyricslides
AI background image generation for lyric slides
"""

from setuptools import setup, find_packages

# Read README for long description
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Core requirements (always installed)
core_requirements = [
    "click>=8.1.7",
    "rich-click>=1.7.0",
    "rich>=13.0.0",
    "pyyaml>=6.0.1",
    "tqdm>=4.66.1",
    "python-dotenv>=1.0.0",
    "aiohttp>=3.9.1",
    "asyncio-throttle>=1.0.2",
    "Pillow>=10.0.0",
]

setup(
    name="lyricslides",
    version="0.1.0",
    author="lyricslides Team",
    description="Generate and cache AI background images for song lyric slides",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Graphics",
        "Topic :: Internet :: WWW/HTTP :: Dynamic Content",
    ],
    python_requires=">=3.10",
    install_requires=core_requirements,
    extras_require={
        "dev": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
            "black>=23.11.0",
            "flake8>=6.1.0",
            "mypy>=1.7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "lyricslides=lyricslides.cli:main",
        ],
    },
    keywords="lyrics slides presentation image generation dall-e stable-diffusion cli",
)
