"""HTTP middleware"""
