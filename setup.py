from setuptools import setup, find_packages

setup(
    name='sealctl',
    version='0.1.0',
    packages=find_packages(exclude=['sealctl.tests', 'sealctl.tests.*']),
    include_package_data=True,
    package_data={
        'sealctl.modules.kubernetes': ['templates/*.j2'],
    },
    install_requires=[
        'typer',
        'paramiko',
        'pydantic>=2',
        'PyYAML',
        'Jinja2',
        'python-dotenv',
        'jsonschema',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'sealctl=sealctl.cli:app'
        ]
    },
    description='Bootstrap, scale, upgrade and reset kubeadm clusters on bare-metal hosts over SSH',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
