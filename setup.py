from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="rrd-bindings",
    version="0.1.0",
    author="",
    author_email="",
    description="RRDtool round robin database Python bindings over librrd",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["rrd", "rrd.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    python_requires=">=3.8",
    install_requires=[],
    extras_require={
        "dev": [
            "pytest>=6.0",
            "pytest-benchmark",
        ],
    },
    keywords="rrdtool, rrd, timeseries, database, ctypes",
)
