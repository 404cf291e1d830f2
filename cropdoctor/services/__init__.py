# CropDoctor services
"""
Diagnosis building blocks.

- artifact: sharded model loader and process-wide model store
- graph: torch forward pass over the exported layer topology
- preprocess / classifier / synthesizer: the local diagnosis path
- remote: Groq and Ollama providers for the remote tiers and refine step
- translation: farmer-language output
"""
