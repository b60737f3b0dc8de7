"""
Setup script for SOTE - Decentralized peer-to-peer encrypted messaging.

This messenger provides:
- One node per user, reachable as a Tor hidden service
- Contact exchange with explicit human approval on both sides
- End-to-end encrypted messages (X25519 sealed box + AES-256-GCM archive)
- Password-derived key protection (Argon2id)
- Terminal front-end talking to the local node
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='sote-node',
    version='1.0.0',
    author='sote contributors',
    description='A decentralized peer-to-peer end-to-end encrypted messenger over Tor hidden services',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.9',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'rich>=13.7.0',
        'aiofiles>=23.2.1',
        'qrcode>=7.4.2',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'sote=sote.main:main',
            'sote-node=sote.server:main',
        ],
    },
)
