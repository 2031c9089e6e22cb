from setuptools import setup, find_packages

base_packages = ["click>=7.0"]
test_packages = ["pytest"]


setup(
    name='raftcore',
    version='0.1.0',
    packages=find_packages(where='src'),
    package_dir={"": "src"},
    install_requires=base_packages,
    extras_require={'test': test_packages},
    python_requires='>=3.8',
    entry_points={
        'console_scripts': [
            'raftcore = raftcore.cli:main',
        ]
    },
    description='Raft consensus core with a replicated write-ahead log',
    author='Matthijs Brouns',
)
