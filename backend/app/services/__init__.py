"""
Services Layer

Queue reorder business logic:
- queue_optimizer: CP-SAT model, pure function of its request
- reorder_plan_cache: plans held between preview and apply
- live_queue_store: versioned reads / guarded writes of the live queue
- queue_reorder: preview / apply / cancel coordination

Services take sessions or stores, never HTTP request/response objects.
"""
