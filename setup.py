from setuptools import find_packages, setup

setup(
    name="rental-engine",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_dir={"": "."},
    python_requires=">=3.9",
    install_requires=[
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        "loguru>=0.7.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "redis>=4.5.0",
        "cachetools>=5.0.0",
        "requests>=2.31.0",
        "pybreaker>=1.0.0",
        "prometheus-client>=0.17.0",
        "qrcode[pil]>=7.4",
    ],
    extras_require={
        "test": ["pytest>=7.0.0"],
    },
    entry_points={
        "console_scripts": [
            "rental-engine-init-db=rental_engine.main:main",
        ],
    },
)
