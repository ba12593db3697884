"""
Setup script for OmniChat library.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="omnichat",
    version="0.1.0",
    author="Jan Bernardic",
    author_email="janbernardic1@gmail.com",
    description="A library for aggregating live chat from destiny.gg, Kick, Twitch and YouTube",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["omnichat", "omnichat.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Communications :: Chat",
        "Topic :: Internet :: WWW/HTTP :: Dynamic Content",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.9",
    install_requires=[
        "aiohttp>=3.8.0",
        "websockets>=13.0",
        "cloudscraper>=1.2.71",
        "ua-generator>=1.0.0",
        "python-dotenv>=1.0.0",
        "loguru>=0.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
    keywords="chat, livestream, destiny.gg, kick, twitch, youtube, streaming, realtime",
)
