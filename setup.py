from setuptools import setup, find_packages

setup(
    name="trustlink",
    version="0.1.0",
    description="Identity verification, account linking and merge, and trust scoring engine",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "pynacl>=1.5.0",
        "base58>=2.1",
        "httpx>=0.24",
        "pydantic>=2.0",
        "python-json-logger>=3.1",
    ],
    extras_require={"dev": ["pytest>=7.0", "pytest-asyncio>=0.21", "respx>=0.20"]},
    entry_points={"console_scripts": ["trustlink=trustlink.cli:main"]},
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Security :: Cryptography",
        "Topic :: Software Development :: Libraries",
        "Programming Language :: Python :: 3",
    ],
    keywords="identity account-linking wallet oauth trust-score",
)
