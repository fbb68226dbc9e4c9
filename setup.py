from setuptools import setup
from pathlib import Path

# Read README for long description
readme = Path(__file__).parent / "README.md"
long_description = readme.read_text() if readme.exists() else ""

setup(
    name='pgbackrest-reconciler',
    version='1.2.0',
    author='Frederik Berg',
    description='Reconciliation engine for pgBackRest repositories, stanzas and backups of PostgresCluster objects',
    long_description=long_description,
    long_description_content_type='text/markdown',
    # Explicitly list packages and their source directories
    packages=['pgbackrest_reconciler', 'common'],
    package_dir={
        'pgbackrest_reconciler': 'apps/controller/pgbackrest_reconciler',
        'common': 'apps/common',
    },
    package_data={
        'pgbackrest_reconciler': ['templates/*.j2'],
    },
    install_requires=[
        'kubernetes>=28.0.0',
        'PyYAML>=6.0',
        'Jinja2>=3.1',
        'cryptography>=41.0',
        'kopf>=1.37',
    ],
    extras_require={
        'test': [
            'pytest>=7.4',
        ],
    },
    entry_points={
        'console_scripts': [
            'pgbackrest-reconciler=pgbackrest_reconciler.main:main',
        ],
    },
    python_requires='>=3.11',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
    ],
)
