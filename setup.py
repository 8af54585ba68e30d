from setuptools import find_packages, setup

setup(
    name='tcom-bridge',
    version='1.4.0',
    description='Serial bridge daemon joining a virtual COM port to a physical one',
    author='isantolin',
    author_email='',
    packages=find_packages(include=['tcombridge', 'tcombridge.*']),
    python_requires='>=3.11',
    install_requires=[
        'pyserial',
        'pyserial-asyncio-fast',
        'msgspec',
        'marshmallow',
        'transitions',
        'tenacity',
        'prometheus-client',
        'uvloop; sys_platform != "win32"',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'tcombridge=tcombridge.daemon:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: Microsoft :: Windows',
        'Operating System :: POSIX :: Linux',
    ],
)
