"""
Worker module.
Contains the handler registry, job factory and worker pool.
"""
