"""
Controllers Package

Connection recovery, port scoring and discovery, and the acquisition
supervisor.
"""
