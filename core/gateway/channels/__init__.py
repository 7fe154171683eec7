"""Platform connectors: DingTalk Stream mode and WeCom callback mode."""
