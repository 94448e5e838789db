from setuptools import setup, find_packages


setup(
    name='torch_matting',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=[
        'torch>=2.0.0',
        'numpy',
        'scipy',
        'Pillow',
    ],
    extras_require={
        'triton': ['triton'],
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': ['torch-matting=torch_matting.__main__:main'],
    },
)
