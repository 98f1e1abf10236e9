from setuptools import setup, find_packages

setup(
    name='metersync',
    version='2026.10.1',
    description='BACnet meter reading collection and local/remote database sync with BACpypes3',
    author='MeterSync Development Team',
    packages=find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    install_requires=[
        'bacpypes3>=0.0.102',
        'python-dotenv>=1.0.0',
        'sqlmodel>=0.0.16',
        'psycopg2-binary>=2.9',
        'pytz>=2024.1',
        'fastapi>=0.110',
        'uvicorn>=0.29',
    ],
    extras_require={
        'test': [
            'pytest>=8.0',
            'pytest-asyncio>=0.23',
            'httpx>=0.27',
        ],
    },
    entry_points={
        'console_scripts': [
            'metersync=metersync.__main__:main',
        ],
    },
    python_requires='>=3.10',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Topic :: Communications',
        'Topic :: System :: Networking',
    ],
    keywords='bacnet metering building-automation sync',
)
