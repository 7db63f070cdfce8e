"""Geometric building blocks for feature-based visual SLAM: EPnP and Sim3 solvers,
settings, image input, trajectory export and thread-safe control flags."""

__version__ = "0.1.0"