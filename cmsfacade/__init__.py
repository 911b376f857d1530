"""
Content-access facade over table-oriented SaaS backends.
"""
