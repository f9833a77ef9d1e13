from setuptools import setup, find_packages


setup(
    name="injectguard",
    version="1.0.0",
    packages=find_packages(include=["injectguard", "injectguard.*"]),
    install_requires=[
        "requests==2.32.3",
        "PyYAML==6.0.2",
    ],
    python_requires=">=3.9",
    author="InjectGuard Team",
    description="Policy-driven injection strategy engine for user scripts",
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "injectguard-validate=injectguard.cli:validate_main",
            "injectguard-info=injectguard.cli:info_main",
        ],
    },
)
