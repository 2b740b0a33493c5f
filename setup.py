from setuptools import setup
import os


README = open(os.path.abspath('README.rst')).read()
HISTORY = open(os.path.abspath('HISTORY.rst')).read()


setup(
    name='panelcert',
    version='0.1.0',
    description="Keeps a cPanel hosted domain's Let's Encrypt certificate renewed and installed.",
    long_description="\n\n".join([README, HISTORY]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12"],
    install_requires=[
        'click',
        'cryptography',
        'pyOpenSSL',
        'python-json-logger>=3.1',
        'requests'],
    extras_require={
        'test': ['pytest']},
    entry_points={
        'console_scripts': ['panelcert = panelcert:main']},
    packages=['panelcert'],
    package_dir={'': 'src'},
    python_requires='>=3.8')
