"""Language-model insights over OpenAI chat completions.

Calls go straight through ``requests`` (no SDK). Any failure degrades to a
fixed apology string; callers never see an exception.
"""
import json
import logging
from typing import Any, Dict, Iterable, List

import requests

from config import CONFIG

logger = logging.getLogger(__name__)

PORTFOLIO_FALLBACK = 'Unable to generate AI insights at this time.'
SENTIMENT_FALLBACK = 'Unable to analyze market sentiment at this time.'
PREDICTION_FALLBACK = 'Unable to generate price predictions at this time.'

_FAKE_KEYS = {'fake', 'test', 'dummy'}


class AIInsightsError(Exception):
    pass


def stub_mode() -> bool:
    api_key = CONFIG.get('OPENAI_API_KEY')
    return (not api_key) or bool(CONFIG.get('OPENAI_STUB')) or str(api_key).lower() in _FAKE_KEYS


def chat_completion(system: str, prompt: str, max_tokens: int, temperature: float) -> str:
    """Single chat completion; returns the message content or raises AIInsightsError."""
    if stub_mode():
        first_line = next((ln.strip() for ln in prompt.splitlines() if ln.strip()), '')
        return f"[stub] {first_line} Set OPENAI_API_KEY to use the real model."
    payload = {
        'model': CONFIG['OPENAI_MODEL'],
        'messages': [
            {'role': 'system', 'content': system},
            {'role': 'user', 'content': prompt},
        ],
        'max_tokens': max_tokens,
        'temperature': temperature,
    }
    try:
        resp = requests.post(
            CONFIG['OPENAI_URL'],
            headers={
                'Authorization': f"Bearer {CONFIG['OPENAI_API_KEY']}",
                'Content-Type': 'application/json',
            },
            json=payload,
            timeout=CONFIG['OPENAI_TIMEOUT'],
        )
    except requests.exceptions.RequestException as e:
        raise AIInsightsError(f'openai request failed: {e}') from e
    if resp.status_code >= 400:
        logger.warning(f"openai upstream error {resp.status_code}: {resp.text[:200]}",
                       extra={'event': 'openai_upstream_error'})
        raise AIInsightsError(f'openai returned {resp.status_code}')
    try:
        content = resp.json()['choices'][0]['message']['content']
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise AIInsightsError('malformed openai response') from e
    if not content:
        raise AIInsightsError('empty openai reply')
    return content


def generate_portfolio_analysis(portfolio: Any, market_data: Dict[str, Any]) -> str:
    prompt = f"""Analyze this cryptocurrency portfolio and provide insights:

Portfolio: {json.dumps(portfolio, indent=2, default=str)}
Market Data: {json.dumps(market_data, indent=2, default=str)}

Please provide:
1. Overall portfolio health assessment
2. Risk analysis and diversification recommendations
3. Market trend insights for held coins
4. Potential opportunities or warnings
5. Suggested actions (buy/sell/hold)

Keep the response concise but informative."""
    try:
        return chat_completion(
            'You are a professional cryptocurrency analyst providing portfolio insights.',
            prompt, max_tokens=1000, temperature=0.7,
        )
    except AIInsightsError as e:
        logger.error(f"AI analysis error: {e}")
        return PORTFOLIO_FALLBACK


def generate_market_sentiment(symbols: Iterable[str]) -> str:
    symbols: List[str] = list(symbols)
    prompt = f"""Analyze the current market sentiment for these cryptocurrencies: {', '.join(symbols)}

Consider:
- Recent news and developments
- Social media sentiment
- Technical indicators
- Market trends

Provide a sentiment score (1-10) and brief explanation for each coin."""
    try:
        return chat_completion(
            'You are a cryptocurrency market sentiment analyst.',
            prompt, max_tokens=800, temperature=0.6,
        )
    except AIInsightsError as e:
        logger.error(f"Sentiment analysis error: {e}")
        return SENTIMENT_FALLBACK


def generate_price_prediction(coin_data: Dict[str, Any]) -> str:
    prompt = f"""Based on this cryptocurrency data, provide a price prediction analysis:

{json.dumps(coin_data, indent=2, default=str)}

Consider:
- Historical price patterns
- Volume trends
- Market cap changes
- Technical indicators

Provide:
1. Short-term prediction (1-7 days)
2. Medium-term outlook (1-4 weeks)
3. Key factors influencing price
4. Confidence level

Note: This is for educational purposes only, not financial advice."""
    try:
        return chat_completion(
            'You are a cryptocurrency technical analyst. '
            'Always include disclaimers about predictions being speculative.',
            prompt, max_tokens=600, temperature=0.5,
        )
    except AIInsightsError as e:
        logger.error(f"Price prediction error: {e}")
        return PREDICTION_FALLBACK
