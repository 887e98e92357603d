"""
算例
"""
