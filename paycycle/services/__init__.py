"""Payment lifecycle services"""
