from setuptools import setup, find_packages

setup(
    name="thl_tools",
    version="1.0.0",
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.8',
    install_requires=[
        'prompt_toolkit>=3.0.0',
        'rich>=10.0.0',
        'chardet>=4.0.0',
    ],
    extras_require={
        'test': ['pytest>=7.0'],
    },
    entry_points={
        'console_scripts': [
            'thl-tools=thl_tools.main:main',
        ],
    },
)
