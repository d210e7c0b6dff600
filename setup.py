import os.path

from setuptools import setup

def read(fname):
    with open(os.path.join(os.path.dirname(__file__), fname)) as fp:
        return fp.read()

setup(
    name='fcmcast',
    version='0.2.0',
    author='Sardar Yumatov',
    author_email='ja.doma@gmail.com',
    description='Broadcast a notification to many devices with Firebase Cloud Messaging',
    long_description=read('README.rst'),
    packages=['fcmcast'],
    license="Apache 2.0",
    keywords='fcm firebase push notification multicast android iOS',
    python_requires='>=3.8',
    install_requires=['firebase-admin>=6.2', 'google-auth', 'pyOpenSSL'],
    extras_require={'test': ['mock']},
    entry_points={'console_scripts': ['fcmcast = fcmcast.__main__:main']},
    classifiers = [ 'Development Status :: 4 - Beta',
                    'Intended Audience :: Developers',
                    'License :: OSI Approved :: Apache Software License',
                    'Programming Language :: Python :: 3',
                    'Topic :: Software Development :: Libraries :: Python Modules']
)
