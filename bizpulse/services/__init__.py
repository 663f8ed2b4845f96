"""Business services: sync orchestration, insights, webhooks, notifications and jobs"""
