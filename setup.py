"""
setup.py for invoex.

Runtime dependencies cover the vision model client, OCR, persistence,
the POS platform HTTP client, configuration and the CLI.
"""

from setuptools import setup, find_packages

setup(
    name="invoex",
    version="1.0.0",
    description="Invoice extraction and catalog reconciliation pipeline",
    packages=find_packages(exclude=['tests', 'tests.*']),
    package_data={
        'invoex': ['config/*.yaml', 'prompts/*.yaml'],
    },
    python_requires='>=3.9',
    install_requires=[
        'anthropic>=0.34.0',
        'click',
        'httpx',
        'jinja2',
        'Pillow',
        'pydantic>=2.0',
        'pytesseract',
        'pyyaml',
        'sqlalchemy>=2.0',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'invoex=invoex.cli:cli',
        ],
    },
)
