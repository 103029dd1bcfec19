"""
Utils package.

Models Structure:
- All models are Pydantic models.
- All dates are represented as epoch timestamps (milliseconds since 1970-01-01T00:00:00Z).
- Models persisted to DynamoDB implement `to_dynamodb_item()` and `from_dynamodb_item()`
  so every stored value is a DynamoDB supported type (floats travel as Decimal).
"""
