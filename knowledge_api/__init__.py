"""
Bridge between Dify's external knowledge API and Amazon Bedrock Knowledge Bases.
"""
