from setuptools import setup, find_packages

setup(
    name="buildlink",
    version="0.3.0",
    description="Thin CLI client that runs builds through a long-running analysis server",
    author="phisanti",
    author_email="tisalon@outlook.com",
    license="MIT",
    packages=find_packages(include=["buildlink", "buildlink.*"]),
    install_requires=[
        "typer>=0.9.0",
        "rich>=13.0.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "buildlink=buildlink.main:buildlink",
        ],
    },
    python_requires=">=3.10",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
