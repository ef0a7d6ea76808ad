from setuptools import setup

setup(
    name='arap_deform',
    version='0.0',
    description='As-rigid-as-possible mesh deformation with local/global iterations',
    author='Siyou Lin',
    author_email='linsy21@mails.tsinghua.edu.cn',
    packages=['arap_deform',
              'arap_deform.mesh',
              'arap_deform.deform',
              'arap_deform.pcd_proc',
              'arap_deform.misc',
              ],
    install_requires=[
        'numpy',
        'scipy>=1.9',
        'torch',
        'libigl',
        'omegaconf',
        'tqdm',
    ],
    extras_require={
        'test': ['pytest'],
    },
)
