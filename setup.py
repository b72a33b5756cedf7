"""NAFLD survival report setup script"""

__authors__ = ["Dominik Dahlem"]
__status__ = "Development"

from read_version import read_version
from setuptools import find_namespace_packages, setup

with open("README.md", "r") as fh:
    LONG_DESC = fh.read()
    setup(
        name="nafld",
        version=read_version("nafld", "__init__.py"),
        author="Dominik Dahlem",
        author_email="mail@dominik-dahlem.com",
        description="Survival analysis report for the NAFLD cohort",
        long_description=LONG_DESC,
        long_description_content_type="text/markdown",
        url="",
        zip_safe=False,
        packages=find_namespace_packages(include=["nafld", "nafld.*"]),
        classifiers=[
            "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
            "Programming Language :: Python :: 3.10",
            "Programming Language :: Python :: 3.11",
            "Programming Language :: Python :: 3.12",
            "Operating System :: OS Independent",
        ],
        python_requires=">=3.10",
        install_requires=[
            "hydra-core",
            "omegaconf",
            "hydra-colorlog",
            "read_version",
            "numpy",
            "pandas",
            "polars",
            "pyarrow",
            "scipy",
            "lifelines>=0.28",
            "autograd",
            "formulaic",
            "statsmodels",
            "matplotlib",
            "seaborn",
            "logdecorator",
        ],
        extras_require={
            "test": [
                "pytest",
                "hypothesis",
            ],
        },
        include_package_data=True,
    )
