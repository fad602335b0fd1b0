"""Command line interface for Taktgeber"""
