from setuptools import setup, find_packages

setup(
    name="batchex",
    version="0.1.0",
    packages=find_packages(include=['batchex', 'batchex.*']),
    package_data={
        'batchex': ['config/*.yaml', 'prompts/*.yaml'],
    },
    install_requires=[
        'pyyaml',
        'sqlalchemy>=2.0',
        'click',
        'jinja2',
        'openai>=1.0'
    ],
    extras_require={
        'postgres': ['psycopg2-binary'],
        'test': ['pytest', 'pytest-asyncio']
    },
    entry_points={
        'console_scripts': [
            'batchex=batchex.cli:cli',
        ],
    },
    python_requires='>=3.10'
)
