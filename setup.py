from setuptools import setup, find_packages

setup(
    name="sched-extender",
    version="0.1.0",
    description="Kubernetes scheduler extender: filter, prioritize, preempt and bind decisions",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "kubernetes>=28.0.0",
        "pyyaml>=6.0",
        "prometheus-client>=0.19.0",
        "requests>=2.31.0",
        "numpy>=1.24.0",
        "loguru>=0.7.0",
        "flask>=2.3.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "sched-extender=sched_extender.extender_main:main",
        ],
    },
)
