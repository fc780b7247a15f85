from setuptools import setup, find_packages

setup(
    name="qkconv",
    version="0.1.0",
    packages=find_packages(),
    install_requires=['numpy>=1.22'],
    extras_require={
        'test': ['pytest>=7.0', 'torch>=2.0'],
    },
    python_requires=">=3.8",
)
