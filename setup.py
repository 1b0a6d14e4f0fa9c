from setuptools import find_packages, setup

# Core requirements
INSTALL_REQUIRES = [
    "requests>=2.31.0",
    "urllib3>=1.26.0",
    "python-dotenv>=1.0.0",
    "cachetools>=5.5.0",
    "structlog>=23.2.0",
    "prometheus-client>=0.17.1",
    "click>=8.0.0",
    "flask>=2.3.0",
    "werkzeug>=2.3.0",
]

# Development requirements
EXTRAS_REQUIRE = {
    "dev": [
        "pytest>=7.4.3",
        "pytest-cov>=4.1.0",
        "pytest-mock>=3.12.0",
        "black>=23.11.0",
        "flake8>=6.1.0",
        "mypy>=1.7.1",
        "isort>=5.12.0",
        "types-requests>=2.31.0.10",
        "types-cachetools>=5.3.0",
    ],
    "test": [
        "pytest>=7.4.3",
        "pytest-cov>=4.1.0",
        "pytest-mock>=3.12.0",
    ],
}

setup(
    name="podcast_proxy",
    version="1.0.0",
    description="A podcast RSS proxy that rewrites media URLs and relays the media",
    long_description=open("README.md", "r", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "docs*"]),
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.12",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "Topic :: Multimedia :: Sound/Audio",
    ],
    python_requires=">=3.9",
    install_requires=INSTALL_REQUIRES,
    extras_require=EXTRAS_REQUIRE,
    entry_points={
        "console_scripts": [
            "podcast-proxy=podcast_proxy.cli:cli",
        ],
    },
)
