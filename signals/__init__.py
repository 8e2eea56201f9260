"""
Signal-specific diff engines, discovered by ``watchcore.plugin_loader``.
"""
