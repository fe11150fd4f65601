from setuptools import setup, find_packages

setup(
    name="anekit",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "coremltools>=9.0",     # Loads and runs the compiled model stages
        "numpy>=1.24.0",        # Tensors passed between stages
        "tqdm>=4.66.0",         # Progress bars while loading stages
        "transformers>=4.36.0", # HuggingFace tokenizers
        "pyyaml>=6.0",          # meta.yaml configuration
    ],
    extras_require={
        "dev": [
            "black>=23.12.0",   # Code formatting
            "flake8>=7.0.0",    # Linting
            "pytest>=7.4.0",    # Testing
            "pytest-cov>=4.1.0" # Test coverage
        ]
    },
    entry_points={
        "console_scripts": [
            "anekit-generate=anekit.cli:main",
        ]
    },
    description="Token-by-token text generation over lazily loaded CoreML model stages",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="ANEMLL Team",
    author_email="realanemll@gmail.com",
    license="MIT",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "License :: OSI Approved :: MIT License",
        "Operating System :: MacOS :: MacOS X",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Intended Audience :: Science/Research",
        "Development Status :: 3 - Alpha"
    ],
    python_requires=">=3.9",
)
