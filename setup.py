from setuptools import find_packages, setup

setup(
    name='farmbot-config',
    version='5.0.0',
    description='Configuration and status tracker daemon for FarmBot controllers',
    author='',
    author_email='',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.11',
    install_requires=[
        'msgspec',
        'tenacity',
        'transitions',
        'prometheus-client',
        'uvloop',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'farmbot-config=farmbot_config.daemon:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
)
