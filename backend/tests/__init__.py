"""Test package for the flow run engine"""
