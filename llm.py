"""Structured-output LLM clients.

Both clients expose ``complete_json(prompt) -> dict``. Transport failures raise
``VendorError``; output that is not a JSON object raises
``MalformedVendorResponse``.
"""

import json

from groq import Groq

from errors import MalformedVendorResponse, VendorError


def extract_json(text):
    """
    Parse a JSON object out of model output, tolerating extra text or code
    fences around it.
    """
    if text is None:
        raise MalformedVendorResponse("Empty response")
    s = text.strip()
    try:
        if s.startswith("{") and s.endswith("}"):
            result = json.loads(s)
        else:
            start = s.find("{")
            end = s.rfind("}")
            if start == -1 or end <= start:
                raise MalformedVendorResponse(f"No JSON object in response: {s[:200]}")
            result = json.loads(s[start:end + 1])
    except json.JSONDecodeError as e:
        raise MalformedVendorResponse(f"Invalid JSON in response: {e}") from e
    if not isinstance(result, dict):
        raise MalformedVendorResponse("Response JSON is not an object")
    return result


class GeminiJSONClient:
    """Google Gemini with JSON response mode."""

    name = "gemini"

    def __init__(self, api_key, model="gemini-2.5-flash", temperature=0.3, model_client=None):
        self.model_name = model
        self.temperature = temperature
        if model_client is not None:
            self.model = model_client
            return
        if not api_key:
            raise ValueError("GOOGLE_GEMINI_API_KEY is required for the Gemini LLM provider")
        import google.generativeai as genai
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(self.model_name)

    def complete_json(self, prompt):
        print(f"[API REQUEST] Calling Gemini ({self.model_name})")
        try:
            response = self.model.generate_content(
                prompt,
                generation_config={
                    "temperature": self.temperature,
                    "response_mime_type": "application/json",
                }
            )
            text = response.text
        except Exception as e:
            print(f"[API ERROR] Gemini request failed: {e}")
            raise VendorError(f"Gemini request failed: {e}") from e
        print("[API RESPONSE] Gemini completed")
        return extract_json(text)


class GroqJSONClient:
    """Groq chat completions with JSON object mode."""

    name = "groq"

    def __init__(self, api_key=None, model="llama-3.3-70b-versatile", temperature=0.3, client=None):
        self.client = client if client is not None else Groq(api_key=api_key)
        self.model_name = model
        self.temperature = temperature

    def complete_json(self, prompt):
        print(f"[API REQUEST] Calling Groq AI ({self.model_name})")
        try:
            completion = self.client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {
                        "role": "user",
                        "content": prompt
                    }
                ],
                temperature=self.temperature,
                response_format={"type": "json_object"}
            )
            response_content = completion.choices[0].message.content
        except Exception as e:
            print(f"[API ERROR] Exception calling Groq AI: {e}")
            raise VendorError(f"Groq request failed: {e}") from e
        print("[API RESPONSE] Groq AI completed")
        return extract_json(response_content)


def create_llm_client(settings):
    """Build the LLM client selected by LLM_PROVIDER."""
    if settings.llm_provider == "groq":
        return GroqJSONClient(api_key=settings.groq_api_key, model=settings.groq_llm_model)
    return GeminiJSONClient(api_key=settings.gemini_api_key, model=settings.gemini_model)
