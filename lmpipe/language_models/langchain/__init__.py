""" LangChain interface to language models

This package connects the model specifications written in config.toml
(or given in code as LanguageModelSettings objects) to the LangChain
chat model objects that call the providers, and adapts the LangChain
messages to the lmpipe data model.

- models: the factory and repository of LangChain chat models
- fake_models: offline chat models of the 'Debug' source
- conversion: conversion of messages to and from LangChain
- adapter: the model invoker calling LangChain chat models
"""
