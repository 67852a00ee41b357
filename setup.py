from setuptools import setup, find_packages

setup(
    name="picrust2_tools",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={"picrust2_tools": ["data/*.tsv"]},
    include_package_data=True,
    install_requires=[
        # Core data processing
        "pandas>=1.5.0",
        "numpy>=1.23.0",
        "scipy>=1.9.0",

        # Statistical and scientific libraries
        "scikit-bio>=0.5.8",
        "scikit-learn>=1.0.0",
        "statsmodels>=0.13.0",
        "pydeseq2>=0.4.0",

        # Visualization
        "matplotlib>=3.5.0",
        "seaborn>=0.12.0",

        # KEGG REST lookups
        "requests>=2.25.0",

        # System monitoring and utilities
        "psutil>=5.9.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        'console_scripts': [
            'picrust2-tools=picrust2_tools.cli.main_cli:main',
            'picrust2-convert=picrust2_tools.cli.convert_cli:main',
            'picrust2-daa=picrust2_tools.cli.daa_cli:main',
            'picrust2-annotate=picrust2_tools.cli.annotate_cli:main',
            'picrust2-viz=picrust2_tools.cli.viz_cli:main',
            'picrust2-pipeline=picrust2_tools.cli.pipeline_cli:main',
        ],
    },
    author="David Haslam",
    author_email="dbhaslam@gmail.com",
    description="Downstream analysis of PICRUSt2 predicted functional profiles: "
                "KO to KEGG conversion, differential abundance, pathway annotation and plots",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "Intended Audience :: Science/Research",
    ],
    python_requires=">=3.9",
)
